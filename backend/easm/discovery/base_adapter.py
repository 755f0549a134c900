"""
Base classes for tool adapters.

Every scan capability (DNS enumeration, port scan, web crawl, certificate
transparency, vulnerability scan) wraps exactly one external tool or
library behind ToolAdapter.run(). The scheduler calls run() on a worker
thread and hands whatever comes back to the normalizer.

Adapters ONLY collect. They never touch the database and never decide how
an observation maps onto the inventory; that belongs to the normalizer.

Contract:
    - return a RawFindings subclass on success
    - raise AdapterError(kind=transient|permanent|timeout) on failure,
      attaching any findings recovered so far as ``partial``
    - observe ``cancel`` at every polling/read point and return the
      findings gathered so far with ``partial=True`` once it is set
    - respect ``deadline`` (a time.monotonic() value)

The adapter set is closed: one RawFindings shape per Capability, and the
registry in adapters/__init__.py maps each capability to its adapter.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from ..models import now_utc

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    DNS_ENUM = "dns_enum"
    PORT_SCAN = "port_scan"
    WEB_CRAWL = "web_crawl"
    CERT_TRANSPARENCY = "cert_transparency"
    VULN_SCAN = "vuln_scan"


# Trust order used to break observed_at ties between conflicting observations.
# Higher wins.
CAPABILITY_PRIORITY: Dict[str, int] = {
    Capability.VULN_SCAN.value: 5,
    Capability.PORT_SCAN.value: 4,
    Capability.WEB_CRAWL.value: 3,
    Capability.DNS_ENUM.value: 2,
    Capability.CERT_TRANSPARENCY.value: 1,
}


def capability_priority(source: str) -> int:
    return CAPABILITY_PRIORITY.get(str(getattr(source, "value", source)), 0)


def remaining(deadline: float) -> float:
    """Seconds left before ``deadline`` (never negative)."""
    return max(0.0, deadline - time.monotonic())


# ---------------------------------------------------------------------------
# Raw findings, one shape per capability
# ---------------------------------------------------------------------------

@dataclass
class RawFindings:
    """
    Unnormalized output of one adapter invocation.

    Fields:
        target:       what the adapter was pointed at
        observed_at:  when the observation was made (naive UTC)
        partial:      True if the run stopped early (cancel/timeout)
        output:       captured tool stdout/stderr, kept for the job log
        metadata:     adapter-specific extras (command line, counts, ...)
    """
    capability: ClassVar[Capability]

    target: str
    observed_at: datetime = field(default_factory=now_utc)
    partial: bool = False
    output: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return self.capability.value

    def count(self) -> int:
        return 0


@dataclass
class DnsRecord:
    name: str          # owner name, e.g. "api.example.com"
    rtype: str         # A / AAAA / CNAME / MX / NS / TXT / PTR
    value: str


@dataclass
class DnsFindings(RawFindings):
    capability: ClassVar[Capability] = Capability.DNS_ENUM
    records: List[DnsRecord] = field(default_factory=list)

    def count(self) -> int:
        return len(self.records)


@dataclass
class ObservedPort:
    ip: str
    port: int
    protocol: str = "tcp"
    state: str = "open"
    service: Optional[str] = None
    product: Optional[str] = None
    version: Optional[str] = None
    extra_info: Optional[str] = None
    hostname: Optional[str] = None


@dataclass
class PortFindings(RawFindings):
    capability: ClassVar[Capability] = Capability.PORT_SCAN
    ports: List[ObservedPort] = field(default_factory=list)

    def count(self) -> int:
        return len(self.ports)


@dataclass
class TechMatch:
    name: str
    version: Optional[str] = None
    category: Optional[str] = None


@dataclass
class WebResource:
    url: str
    status_code: int
    title: Optional[str] = None
    server: Optional[str] = None
    content_type: Optional[str] = None
    final_url: Optional[str] = None
    technologies: List[TechMatch] = field(default_factory=list)


@dataclass
class WebFindings(RawFindings):
    capability: ClassVar[Capability] = Capability.WEB_CRAWL
    resources: List[WebResource] = field(default_factory=list)

    def count(self) -> int:
        return len(self.resources)


@dataclass
class CertName:
    name: str
    issuer: Optional[str] = None
    not_before: Optional[str] = None
    not_after: Optional[str] = None
    wildcard: bool = False


@dataclass
class CertFindings(RawFindings):
    capability: ClassVar[Capability] = Capability.CERT_TRANSPARENCY
    names: List[CertName] = field(default_factory=list)

    def count(self) -> int:
        return len(self.names)


@dataclass
class VulnMatch:
    template_id: str
    host: str                          # host / url nuclei ran against
    severity: str = "info"
    name: Optional[str] = None
    matched_at: Optional[str] = None
    description: Optional[str] = None
    cve_id: Optional[str] = None
    cvss_score: Optional[float] = None
    references: List[str] = field(default_factory=list)
    ip: Optional[str] = None


@dataclass
class VulnFindings(RawFindings):
    capability: ClassVar[Capability] = Capability.VULN_SCAN
    matches: List[VulnMatch] = field(default_factory=list)

    def count(self) -> int:
        return len(self.matches)


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------

class ToolAdapter(ABC):
    """
    Abstract base class for tool adapters.

    To add a capability:
    1. Add it to Capability and CAPABILITY_PRIORITY
    2. Add a RawFindings subclass and a normalizer handler
    3. Subclass ToolAdapter in easm/discovery/adapters/
    4. Register it in easm/discovery/adapters/__init__.py REGISTRY
    """

    capability: Capability
    description: str = ""
    supported_target_types: tuple = ("domain",)

    def capability_name(self) -> str:
        return self.capability.value

    @property
    def name(self) -> str:
        return self.capability.value

    def supports_target_type(self, target_type: str) -> bool:
        return target_type in self.supported_target_types

    @abstractmethod
    def run(
        self,
        target: str,
        params: Dict[str, Any],
        deadline: float,
        cancel: threading.Event,
    ) -> RawFindings:
        """Collect observations for ``target``. Raise AdapterError on failure."""

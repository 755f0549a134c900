# easm/discovery/adapters/__init__.py
"""
Tool adapter registry.

The set is closed: exactly one adapter per Capability. The scheduler maps a
job's task type onto capabilities (TASK_CAPABILITIES) and looks the adapters
up here.

Target types supported:
  domain:  dns_enum, cert_transparency, port_scan, web_crawl, vuln_scan
  ip:      dns_enum (PTR), port_scan, web_crawl, vuln_scan
  cidr:    port_scan
  url:     every adapter (the host part is used where a host is needed)
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Tuple, Type

from ...models import TaskType
from ..base_adapter import Capability, ToolAdapter
from .ct_logs import CTLogAdapter
from .dns_enum import DNSEnumAdapter
from .nuclei import NucleiAdapter
from .port_scan import PortScanAdapter
from .web_crawl import WebCrawlAdapter

REGISTRY: Dict[Capability, Type[ToolAdapter]] = {
    Capability.DNS_ENUM: DNSEnumAdapter,            # dnspython
    Capability.PORT_SCAN: PortScanAdapter,          # nmap binary + python-nmap
    Capability.WEB_CRAWL: WebCrawlAdapter,          # httpx
    Capability.CERT_TRANSPARENCY: CTLogAdapter,     # crt.sh via requests
    Capability.VULN_SCAN: NucleiAdapter,            # nuclei binary
}

# Capabilities each task type requires by default
TASK_CAPABILITIES: Dict[TaskType, Tuple[Capability, ...]] = {
    TaskType.DNS_ENUMERATION: (Capability.DNS_ENUM, Capability.CERT_TRANSPARENCY),
    TaskType.PORT_SCAN: (Capability.PORT_SCAN,),
    TaskType.WEB_APP_SCAN: (Capability.WEB_CRAWL,),
    TaskType.CERTIFICATE_TRANSPARENCY: (Capability.CERT_TRANSPARENCY,),
    TaskType.VULNERABILITY_SCAN: (Capability.VULN_SCAN,),
}


def build_adapters(config: Mapping[str, Any]) -> Dict[Capability, ToolAdapter]:
    """Instantiate every registered adapter from application config."""
    user_agent = config.get("DISCOVERY_USER_AGENT", "easm-discovery/1.0")
    kill_grace = float(config.get("DISCOVERY_KILL_GRACE", 5))
    options: Dict[Capability, Dict[str, Any]] = {
        Capability.PORT_SCAN: {"binary": config.get("NMAP_BINARY"), "kill_grace": kill_grace},
        Capability.WEB_CRAWL: {"user_agent": user_agent},
        Capability.CERT_TRANSPARENCY: {
            "base_url": config.get("CT_LOG_URL", "https://crt.sh/"), "user_agent": user_agent,
        },
        Capability.VULN_SCAN: {"binary": config.get("NUCLEI_BINARY"), "kill_grace": kill_grace},
    }
    return {cap: cls(**options.get(cap, {})) for cap, cls in REGISTRY.items()}


__all__ = ["REGISTRY", "TASK_CAPABILITIES", "build_adapters"]

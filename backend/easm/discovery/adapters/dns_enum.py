# easm/discovery/adapters/dns_enum.py
"""
DNS enumeration adapter (dnspython).

Domain targets: A / AAAA / CNAME / MX / NS / TXT for the apex, plus an
optional prefix brute force (A/AAAA/CNAME per candidate name).
IP targets: PTR lookup.

NXDOMAIN and NoAnswer are ordinary negative answers. Only resolver-level
failures (timeouts, every nameserver failing) count against the run, and
only when no lookup at all succeeded is the run reported as transient.

Params (job configuration["dns_enum"]):
    bruteforce:  try BRUTEFORCE_PREFIXES (default: False)
    wordlist:    explicit list of prefixes to try (implies brute force)
    timeout:     per-query timeout in seconds (default: 5)
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import dns.exception
import dns.resolver
import dns.reversename

from ...errors import AdapterError
from ..base_adapter import Capability, DnsFindings, DnsRecord, ToolAdapter, remaining
from ..targets import classify_target, host_of

logger = logging.getLogger(__name__)

APEX_RECORD_TYPES = ("A", "AAAA", "CNAME", "MX", "NS", "TXT")
PREFIX_RECORD_TYPES = ("A", "AAAA", "CNAME")

# High-hit-rate prefixes
BRUTEFORCE_PREFIXES = [
    "www", "mail", "webmail", "smtp", "imap", "mx", "ns1", "ns2", "vpn", "remote",
    "autodiscover", "owa", "api", "app", "portal", "admin", "dashboard", "login",
    "auth", "sso", "dev", "test", "staging", "stage", "qa", "uat", "beta", "demo",
    "cdn", "static", "assets", "media", "docs", "wiki", "support", "blog", "shop",
    "status", "monitor", "grafana", "jenkins", "ci", "git", "gitlab", "db", "redis",
]


class _LookupFailed(Exception):
    pass


class DNSEnumAdapter(ToolAdapter):
    capability = Capability.DNS_ENUM
    description = "DNS record lookups and prefix enumeration via dnspython"
    supported_target_types = ("domain", "ip", "url")

    def __init__(self, resolver_factory: Optional[Callable[[], Any]] = None):
        self.resolver_factory = resolver_factory or dns.resolver.Resolver

    def run(self, target: str, params: Dict[str, Any], deadline: float,
            cancel: threading.Event) -> DnsFindings:
        params = params or {}
        host = host_of(target)
        per_query = float(params.get("timeout", 5))

        resolver = self.resolver_factory()
        resolver.timeout = per_query
        resolver.lifetime = per_query * 2

        findings = DnsFindings(target=host)
        errors: List[str] = []
        answered = 0

        if classify_target(target) == "ip":
            queries = [(dns.reversename.from_address(host).to_text(), "PTR", host)]
        else:
            queries = [(host, rtype, host) for rtype in APEX_RECORD_TYPES]
            prefixes = params.get("wordlist") or (BRUTEFORCE_PREFIXES if params.get("bruteforce") else [])
            for prefix in prefixes:
                name = f"{str(prefix).strip().lower()}.{host}"
                queries.extend((name, rtype, name) for rtype in PREFIX_RECORD_TYPES)

        for qname, rtype, owner in queries:
            if cancel.is_set():
                findings.partial = True
                break
            left = remaining(deadline)
            if left <= 0:
                findings.partial = True
                findings.output = "\n".join(errors[-20:])
                raise AdapterError.timeout(
                    f"DNS enumeration of {host} ran out of time ({len(findings.records)} records so far)",
                    partial=findings, output=findings.output,
                )
            try:
                values = self._query(resolver, qname, rtype, min(resolver.lifetime, left))
            except _LookupFailed as e:
                errors.append(f"{qname} {rtype}: {e}")
                continue
            answered += 1
            findings.records.extend(DnsRecord(name=owner, rtype=rtype, value=v) for v in values)

        findings.output = "\n".join(errors[-20:])
        findings.metadata = {"queries": len(queries), "answered": answered, "failed": len(errors)}

        if answered == 0 and errors and not findings.partial:
            raise AdapterError.transient(
                f"no DNS lookups for {host} succeeded: {errors[0]}", output=findings.output,
            )

        logger.info("DNS enum: %d records for %s (%d lookups failed)",
                    len(findings.records), host, len(errors))
        return findings

    def _query(self, resolver, qname: str, rtype: str, lifetime: float) -> List[str]:
        """Values for one lookup. [] for negative answers, _LookupFailed for resolver failures."""
        try:
            answers = resolver.resolve(qname, rtype, lifetime=lifetime)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        except dns.resolver.NoNameservers as e:
            raise _LookupFailed("no nameserver answered") from e
        except dns.exception.Timeout as e:
            raise _LookupFailed("timed out") from e

        values: List[str] = []
        for r in answers:
            text = str(r).strip()
            if rtype == "MX":
                # "10 mail.example.com."
                text = text.split()[-1]
            elif rtype == "TXT":
                text = text.replace('" "', "").strip('"')
            if rtype in ("CNAME", "MX", "NS", "PTR"):
                text = text.rstrip(".").lower()
            if text:
                values.append(text)
        return values

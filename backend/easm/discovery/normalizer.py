# easm/discovery/normalizer.py
"""
Result normalizer: RawFindings -> entity deltas.

Each capability has one handler that turns that adapter's RawFindings into
a flat list of upsert instructions keyed by natural key:

    UpsertAsset          (organization_id, asset_type, value)
    UpsertPort           asset key + (port_number, protocol)
    UpsertTechnology     asset key + (name, version)
    UpsertVulnerability  asset key + template_id

Every delta carries the capability that produced it (``source``) and the
observation time. ``None`` means "not observed" and is never sent as a
value, so a later merge can't erase what an earlier scan saw.

The normalizer is pure: no I/O, no database.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from ..models import AssetType, SEVERITIES
from .base_adapter import (
    Capability, CertFindings, DnsFindings, ObservedPort, PortFindings, RawFindings,
    VulnFindings, WebFindings,
)
from .targets import (
    canonical_value, classify_target, host_of, in_scope, is_valid_domain, split_host_port,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Entity deltas
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class AssetKey:
    organization_id: int
    asset_type: str
    value: str


@dataclass
class UpsertAsset:
    key: AssetKey
    source: str
    observed_at: datetime
    attributes: Dict[str, Any] = field(default_factory=dict)
    status: str = "active"

    def natural_key(self) -> Tuple:
        return (self.key,)


@dataclass
class UpsertPort:
    asset: AssetKey
    port_number: int
    protocol: str
    source: str
    observed_at: datetime
    service_name: Optional[str] = None
    banner: Optional[str] = None
    status: Optional[str] = None

    def natural_key(self) -> Tuple:
        return (self.asset, self.port_number, self.protocol)


@dataclass
class UpsertTechnology:
    asset: AssetKey
    name: str
    version: str                       # "" when unknown
    source: str
    observed_at: datetime
    category: Optional[str] = None

    def natural_key(self) -> Tuple:
        return (self.asset, self.name, self.version)


@dataclass
class UpsertVulnerability:
    asset: AssetKey
    template_id: str
    source: str
    observed_at: datetime
    severity: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    cve_id: Optional[str] = None
    cvss_score: Optional[float] = None
    references: Optional[List[str]] = None
    matched_at: Optional[str] = None
    port: Optional[Tuple[int, str]] = None     # (port_number, protocol)

    def natural_key(self) -> Tuple:
        return (self.asset, self.template_id)


EntityDelta = Union[UpsertAsset, UpsertPort, UpsertTechnology, UpsertVulnerability]


def _clean(attrs: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in attrs.items() if v is not None and v != [] and v != ""}


def asset_key(organization_id: int, value: str) -> Optional[AssetKey]:
    """Natural key for a domain / IP / URL value, or None if it is none of those."""
    kind = classify_target(value)
    if kind not in (AssetType.DOMAIN.value, AssetType.IP.value, AssetType.URL.value):
        return None
    try:
        return AssetKey(organization_id, kind, canonical_value(kind, value))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class ResultNormalizer:
    """Maps each capability's RawFindings onto entity deltas."""

    def __init__(self):
        self._handlers: Dict[Capability, Callable[[int, Any], List[EntityDelta]]] = {
            Capability.DNS_ENUM: self._normalize_dns,
            Capability.PORT_SCAN: self._normalize_ports,
            Capability.WEB_CRAWL: self._normalize_web,
            Capability.CERT_TRANSPARENCY: self._normalize_certs,
            Capability.VULN_SCAN: self._normalize_vulns,
        }

    def normalize(self, organization_id: int, findings: RawFindings) -> List[EntityDelta]:
        handler = self._handlers.get(findings.capability)
        if handler is None:
            raise ValueError(f"no normalizer registered for {findings.capability}")
        deltas = handler(organization_id, findings)
        logger.debug("normalized %d %s observations into %d deltas",
                     findings.count(), findings.source, len(deltas))
        return deltas

    # ── DNS ─────────────────────────────────────────────────────────

    def _normalize_dns(self, org: int, findings: DnsFindings) -> List[EntityDelta]:
        src, seen_at = findings.source, findings.observed_at
        apex = host_of(findings.target)

        rrsets: Dict[str, Dict[str, List[str]]] = defaultdict(lambda: defaultdict(list))
        for rec in findings.records:
            rrsets[rec.name][rec.rtype].append(rec.value)

        deltas: List[EntityDelta] = []
        ip_hostnames: Dict[str, Set[str]] = defaultdict(set)
        related: Dict[str, str] = {}

        for owner in sorted(rrsets):
            records = rrsets[owner]
            if "PTR" in records:
                key = asset_key(org, owner)
                if key:
                    deltas.append(UpsertAsset(key, src, seen_at, {"ptr": sorted(set(records["PTR"]))}))
                continue

            key = asset_key(org, owner)
            if key is None:
                continue
            ips = sorted(set(records.get("A", []) + records.get("AAAA", [])))
            attrs = _clean({
                "resolved_ips": ips,
                "cname": sorted(set(records.get("CNAME", []))),
                "mail_servers": sorted(set(records.get("MX", []))),
                "nameservers": sorted(set(records.get("NS", []))),
                "txt": sorted(set(records.get("TXT", []))),
            })
            deltas.append(UpsertAsset(key, src, seen_at, attrs))

            for ip in ips:
                ip_hostnames[ip].add(key.value)
            for rtype in ("CNAME", "MX", "NS"):
                for name in records.get(rtype, []):
                    if is_valid_domain(name) and in_scope(apex, name):
                        related.setdefault(name, rtype.lower())

        for ip in sorted(ip_hostnames):
            key = asset_key(org, ip)
            if key:
                deltas.append(UpsertAsset(key, src, seen_at, {"hostnames": sorted(ip_hostnames[ip])}))

        for name, via in sorted(related.items()):
            key = asset_key(org, name)
            if key and name not in rrsets:
                deltas.append(UpsertAsset(key, src, seen_at, {"referenced_by": via}))
        return deltas

    # ── Certificate transparency ────────────────────────────────────

    def _normalize_certs(self, org: int, findings: CertFindings) -> List[EntityDelta]:
        deltas: List[EntityDelta] = []
        for cert in findings.names:
            key = asset_key(org, cert.name)
            if key is None:
                continue
            attrs = _clean({
                "cert_issuer": cert.issuer,
                "cert_not_before": cert.not_before,
                "cert_not_after": cert.not_after,
                "wildcard_cert": True if cert.wildcard else None,
            })
            deltas.append(UpsertAsset(key, findings.source, findings.observed_at, attrs))
        return deltas

    # ── Port scan ───────────────────────────────────────────────────

    def _normalize_ports(self, org: int, findings: PortFindings) -> List[EntityDelta]:
        src, seen_at = findings.source, findings.observed_at
        deltas: List[EntityDelta] = []
        hosts: Dict[AssetKey, Set[str]] = {}

        for p in findings.ports:
            key = asset_key(org, p.ip)
            if key is None:
                logger.debug("skipping port on unrecognised host %r", p.ip)
                continue
            names = hosts.setdefault(key, set())
            if p.hostname:
                names.add(p.hostname.lower())

            deltas.append(UpsertPort(
                asset=key,
                port_number=int(p.port),
                protocol=(p.protocol or "tcp").lower(),
                source=src,
                observed_at=seen_at,
                service_name=p.service,
                banner=_banner(p),
                status=p.state,
            ))
            if p.product and p.state == "open":
                deltas.append(UpsertTechnology(key, p.product, p.version or "", src, seen_at, "service"))

        for key in sorted(hosts):
            deltas.append(UpsertAsset(key, src, seen_at, _clean({"hostnames": sorted(hosts[key])})))

        # domain targets: record which addresses the name was scanned at
        if classify_target(findings.target) == AssetType.DOMAIN.value and hosts:
            domain = asset_key(org, findings.target)
            if domain:
                ips = sorted(k.value for k in hosts if k.asset_type == AssetType.IP.value)
                deltas.append(UpsertAsset(domain, src, seen_at, _clean({"resolved_ips": ips})))
        return deltas

    # ── Web crawl ───────────────────────────────────────────────────

    def _normalize_web(self, org: int, findings: WebFindings) -> List[EntityDelta]:
        src, seen_at = findings.source, findings.observed_at
        deltas: List[EntityDelta] = []
        hosts: Set[AssetKey] = set()

        for res in findings.resources:
            key = asset_key(org, res.url)
            if key is None:
                continue
            deltas.append(UpsertAsset(key, src, seen_at, _clean({
                "status_code": res.status_code,
                "title": res.title,
                "server": res.server,
                "content_type": res.content_type,
                "final_url": res.final_url,
            })))
            host = asset_key(org, host_of(res.url))
            if host:
                hosts.add(host)
            for tech in res.technologies:
                deltas.append(UpsertTechnology(key, tech.name, tech.version or "", src, seen_at, tech.category))

        for host in sorted(hosts):
            deltas.append(UpsertAsset(host, src, seen_at, {"http_reachable": True}))
        return deltas

    # ── Vulnerability scan ──────────────────────────────────────────

    def _normalize_vulns(self, org: int, findings: VulnFindings) -> List[EntityDelta]:
        deltas: List[EntityDelta] = []
        for m in findings.matches:
            host, port, _scheme = split_host_port(m.host or m.matched_at or "")
            key = asset_key(org, host) if host else None
            if key is None and m.ip:
                key = asset_key(org, m.ip)
            if key is None:
                logger.debug("skipping %s: no asset for host %r", m.template_id, m.host)
                continue

            severity = (m.severity or "info").lower()
            deltas.append(UpsertVulnerability(
                asset=key,
                template_id=m.template_id,
                source=findings.source,
                observed_at=findings.observed_at,
                severity=severity if severity in SEVERITIES else "info",
                title=m.name,
                description=m.description,
                cve_id=m.cve_id,
                cvss_score=m.cvss_score,
                references=list(m.references) or None,
                matched_at=m.matched_at or m.host,
                port=(port, "tcp") if port else None,
            ))
        return deltas


def _banner(p: ObservedPort) -> Optional[str]:
    parts = [p.product, p.version, f"({p.extra_info})" if p.extra_info else None]
    text = " ".join(x for x in parts if x)
    return text or None

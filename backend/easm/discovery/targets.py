# easm/discovery/targets.py
"""
Target classification and canonical value forms.

Asset natural keys are only unique if every adapter spells the same thing
the same way, so all values go through these helpers before they reach
the merger: lowercase domains without trailing dots or wildcard labels,
compressed IP text, and URLs with a lowercase scheme/host and no default
port or fragment.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

DOMAIN_RE = re.compile(r"^(?:\*\.)?([a-z0-9_-]+\.)+[a-z]{2,63}$", re.IGNORECASE)

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_domain(d: str) -> str:
    d = (d or "").strip().lower()
    if d.startswith("http://") or d.startswith("https://"):
        d = d.split("://", 1)[1]
    d = d.split("/", 1)[0].split("?", 1)[0]
    d = d.strip().strip(".")
    if d.startswith("*."):
        d = d[2:]
    return d


def is_valid_domain(d: str) -> bool:
    d = normalize_domain(d)
    if not d or len(d) > 253:
        return False
    return DOMAIN_RE.match(d) is not None


def is_valid_ip(v: str) -> bool:
    try:
        ipaddress.ip_address((v or "").strip())
        return True
    except ValueError:
        return False


def in_scope(apex: str, name: str) -> bool:
    apex = normalize_domain(apex)
    name = normalize_domain(name)
    return name == apex or name.endswith("." + apex)


def classify_target(target: str) -> Optional[str]:
    """Return "url", "cidr", "ip" or "domain", or None if unrecognised."""
    t = (target or "").strip()
    if not t:
        return None
    lowered = t.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        try:
            host = urlsplit(t).hostname
        except ValueError:
            return None
        return "url" if host and (is_valid_domain(host) or is_valid_ip(host)) else None
    if "/" in t:
        try:
            ipaddress.ip_network(t, strict=False)
            return "cidr"
        except ValueError:
            return None
    if is_valid_ip(t):
        return "ip"
    if is_valid_domain(t):
        return "domain"
    return None


def canonical_ip(v: str) -> str:
    return str(ipaddress.ip_address(v.strip()))


def canonical_url(url: str) -> str:
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower().rstrip(".")
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    netloc = host if port is None or DEFAULT_PORTS.get(scheme) == port else f"{host}:{port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def canonical_value(asset_type: str, value: str) -> str:
    if asset_type == "ip":
        return canonical_ip(value)
    if asset_type == "url":
        return canonical_url(value)
    return normalize_domain(value)


def host_of(target: str) -> str:
    """The bare host of a domain, IP or URL target."""
    kind = classify_target(target)
    if kind == "url":
        host = urlsplit(target.strip()).hostname or ""
        return canonical_ip(host) if is_valid_ip(host) else normalize_domain(host)
    if kind == "ip":
        return canonical_ip(target)
    if kind == "cidr":
        return str(ipaddress.ip_network(target.strip(), strict=False))
    return normalize_domain(target)


def split_host_port(value: str):
    """
    Parse nuclei-style hosts: "https://a.example.com:8443/x", "10.0.0.1:22",
    "[2001:db8::1]:443" or a bare host. Returns (host, port or None, scheme or None).
    """
    v = (value or "").strip()
    if "://" in v:
        parts = urlsplit(v)
        scheme = parts.scheme.lower()
        try:
            port = parts.port
        except ValueError:
            port = None
        return (parts.hostname or "").lower(), port or DEFAULT_PORTS.get(scheme), scheme
    if v.startswith("["):
        host, _, rest = v[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
        return host.lower(), int(port) if port.isdigit() else None, None
    if v.count(":") == 1:
        host, _, port = v.partition(":")
        return host.lower(), int(port) if port.isdigit() else None, None
    return v.lower(), None, None

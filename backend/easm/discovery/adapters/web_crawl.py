# easm/discovery/adapters/web_crawl.py
"""
Web crawl / fingerprint adapter (httpx).

Probes the target over HTTPS and HTTP (or the given URL), records status,
title, server and redirect target for every page fetched, fingerprints
technologies from response headers, cookies and body markup, and follows
same-host links up to ``depth`` levels.

Params (job configuration["web_crawl"]):
    depth:      link levels to follow from the seed pages (default: 1)
    max_pages:  stop after this many pages (default: 10)
    timeout:    per-request timeout in seconds (default: 10)
    schemes:    schemes to seed host targets with (default: ["https", "http"])
"""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import httpx

from ...errors import AdapterError
from ..base_adapter import (
    Capability, TechMatch, ToolAdapter, WebFindings, WebResource, remaining,
)
from ..targets import canonical_url, classify_target, host_of

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 200_000

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
HREF_RE = re.compile(r"""href\s*=\s*["']([^"'#\s]+)""", re.IGNORECASE)

# header -> [(pattern with optional version group, technology, category)]
HEADER_SIGNATURES: Dict[str, List[Tuple[str, str, str]]] = {
    "server": [
        (r"nginx(?:/([\d.]+))?", "nginx", "web_server"),
        (r"Apache(?:/([\d.]+))?", "Apache", "web_server"),
        (r"Microsoft-IIS(?:/([\d.]+))?", "IIS", "web_server"),
        (r"LiteSpeed(?:/([\d.]+))?", "LiteSpeed", "web_server"),
        (r"Caddy", "Caddy", "web_server"),
        (r"openresty(?:/([\d.]+))?", "OpenResty", "web_server"),
        (r"gunicorn(?:/([\d.]+))?", "Gunicorn", "web_server"),
        (r"cloudflare", "Cloudflare", "cdn_waf"),
        (r"AmazonS3", "Amazon S3", "cloud"),
    ],
    "x-powered-by": [
        (r"PHP(?:/([\d.]+))?", "PHP", "framework"),
        (r"ASP\.NET", "ASP.NET", "framework"),
        (r"Express", "Express.js", "framework"),
        (r"Next\.js(?: ([\d.]+))?", "Next.js", "framework"),
    ],
    "x-aspnet-version": [
        (r"([\d.]+)", "ASP.NET", "framework"),
    ],
    "x-generator": [
        (r"WordPress(?: ([\d.]+))?", "WordPress", "cms"),
        (r"Drupal(?: ([\d.]+))?", "Drupal", "cms"),
        (r"Joomla", "Joomla", "cms"),
    ],
}

# presence of the header alone identifies the technology
PRESENCE_HEADERS: Dict[str, Tuple[str, str]] = {
    "cf-ray": ("Cloudflare", "cdn_waf"),
    "x-amz-cf-id": ("AWS CloudFront", "cdn_waf"),
    "x-fastly-request-id": ("Fastly", "cdn_waf"),
    "x-sucuri-id": ("Sucuri WAF", "cdn_waf"),
    "x-azure-ref": ("Azure CDN", "cdn_waf"),
    "x-vercel-id": ("Vercel", "cloud"),
    "x-drupal-cache": ("Drupal", "cms"),
    "x-varnish": ("Varnish", "cache"),
}

# cookie name prefix -> technology
COOKIE_SIGNATURES: Dict[str, Tuple[str, str]] = {
    "PHPSESSID": ("PHP", "framework"),
    "ASP.NET_SessionId": ("ASP.NET", "framework"),
    "JSESSIONID": ("Java", "framework"),
    "laravel_session": ("Laravel", "framework"),
    "connect.sid": ("Express.js", "framework"),
    "_rails": ("Ruby on Rails", "framework"),
    "wordpress_": ("WordPress", "cms"),
    "Drupal.visitor": ("Drupal", "cms"),
}

CONTENT_SIGNATURES: List[Tuple[str, str, str]] = [
    (r"<meta\s+name=[\"']generator[\"']\s+content=[\"']WordPress\s*([\d.]*)", "WordPress", "cms"),
    (r"wp-content|wp-includes", "WordPress", "cms"),
    (r"Drupal\.settings", "Drupal", "cms"),
    (r"Joomla!", "Joomla", "cms"),
    (r"__NEXT_DATA__", "Next.js", "framework"),
    (r"ng-version=[\"']([\d.]+)", "Angular", "framework"),
]


def detect_technologies(headers: httpx.Headers, cookie_names: List[str], body: str) -> List[TechMatch]:
    found: Dict[str, TechMatch] = {}

    def _add(name: str, version: Optional[str], category: str):
        current = found.get(name)
        if current is None or (version and not current.version):
            found[name] = TechMatch(name=name, version=version or None, category=category)

    for header, signatures in HEADER_SIGNATURES.items():
        value = headers.get(header)
        if not value:
            continue
        for pattern, tech, category in signatures:
            m = re.search(pattern, value, re.IGNORECASE)
            if m:
                _add(tech, m.group(1) if m.groups() else None, category)

    for header, (tech, category) in PRESENCE_HEADERS.items():
        if header in headers:
            _add(tech, None, category)

    for cookie in cookie_names:
        for prefix, (tech, category) in COOKIE_SIGNATURES.items():
            if cookie.startswith(prefix):
                _add(tech, None, category)

    for pattern, tech, category in CONTENT_SIGNATURES:
        m = re.search(pattern, body, re.IGNORECASE)
        if m:
            _add(tech, m.group(1) if m.groups() else None, category)

    return sorted(found.values(), key=lambda t: t.name)


def _same_host_links(base_url: str, body: str) -> List[str]:
    host = urlsplit(base_url).hostname
    links: List[str] = []
    for href in HREF_RE.findall(body):
        url = urljoin(base_url, href)
        parts = urlsplit(url)
        if parts.scheme in ("http", "https") and parts.hostname == host:
            links.append(canonical_url(url))
    return links


class WebCrawlAdapter(ToolAdapter):
    capability = Capability.WEB_CRAWL
    description = "HTTP probe, crawl and technology fingerprint via httpx"
    supported_target_types = ("domain", "ip", "url")

    def __init__(self, user_agent: str = "easm-discovery/1.0", verify_tls: bool = False,
                 transport: Optional[httpx.BaseTransport] = None):
        self.user_agent = user_agent
        self.verify_tls = verify_tls
        self.transport = transport

    def seed_urls(self, target: str, params: Dict[str, Any]) -> List[str]:
        if classify_target(target) == "url":
            return [canonical_url(target)]
        host = host_of(target)
        if ":" in host:
            host = f"[{host}]"
        schemes = params.get("schemes") or ["https", "http"]
        return [f"{scheme}://{host}/" for scheme in schemes]

    def run(self, target: str, params: Dict[str, Any], deadline: float,
            cancel: threading.Event) -> WebFindings:
        params = params or {}
        depth = int(params.get("depth", 1))
        max_pages = int(params.get("max_pages", 10))
        request_timeout = float(params.get("timeout", 10))

        findings = WebFindings(target=target)
        pending = deque((url, 0) for url in self.seed_urls(target, params))
        seen = set()
        errors: List[str] = []

        client_kwargs: Dict[str, Any] = {
            "follow_redirects": True,
            "verify": self.verify_tls,
            "headers": {"User-Agent": self.user_agent},
        }
        if self.transport is not None:
            client_kwargs["transport"] = self.transport

        with httpx.Client(**client_kwargs) as client:
            while pending and len(findings.resources) < max_pages:
                if cancel.is_set():
                    findings.partial = True
                    break
                left = remaining(deadline)
                if left <= 0:
                    findings.partial = True
                    findings.output = "\n".join(errors[-20:])
                    raise AdapterError.timeout(
                        f"crawl of {target} ran out of time ({len(findings.resources)} pages so far)",
                        partial=findings, output=findings.output,
                    )

                url, level = pending.popleft()
                if url in seen:
                    continue
                seen.add(url)

                try:
                    resp = client.get(url, timeout=min(request_timeout, left))
                except httpx.HTTPError as e:
                    errors.append(f"{url}: {type(e).__name__}: {e}")
                    continue

                body = resp.text[:MAX_BODY_CHARS] if "html" in resp.headers.get("content-type", "") else ""
                findings.resources.append(self._describe(url, resp, body))

                if level < depth and body:
                    for link in _same_host_links(str(resp.url), body):
                        if link not in seen:
                            pending.append((link, level + 1))

        findings.output = "\n".join(errors[-20:])
        findings.metadata = {"pages": len(findings.resources), "errors": len(errors)}

        if not findings.resources and errors and not findings.partial:
            raise AdapterError.transient(f"no page of {target} could be fetched: {errors[0]}",
                                         output=findings.output)

        logger.info("Web crawl: %d pages from %s (%d errors)",
                    len(findings.resources), target, len(errors))
        return findings

    @staticmethod
    def _describe(url: str, resp: httpx.Response, body: str) -> WebResource:
        title = None
        m = TITLE_RE.search(body)
        if m:
            title = " ".join(m.group(1).split())[:500] or None

        final_url = canonical_url(str(resp.url))
        return WebResource(
            url=url,
            status_code=resp.status_code,
            title=title,
            server=resp.headers.get("server"),
            content_type=resp.headers.get("content-type"),
            final_url=final_url if final_url != url else None,
            technologies=detect_technologies(resp.headers, list(resp.cookies.keys()), body),
        )

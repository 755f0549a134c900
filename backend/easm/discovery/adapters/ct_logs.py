# easm/discovery/adapters/ct_logs.py
"""
Certificate Transparency adapter: queries crt.sh for certificates issued to
the target domain.

Finds: the apex and its subdomains from certificate SANs / common names.
Rate limit: none (public API), but crt.sh is slow and often answers 502/503
under load; those are reported as transient so the scheduler retries.
API key: not required
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List

import requests

from ...errors import AdapterError
from ..base_adapter import Capability, CertFindings, CertName, ToolAdapter, remaining
from ..targets import host_of, in_scope, is_valid_domain, normalize_domain

logger = logging.getLogger(__name__)

CT_LIMIT_DEFAULT = 2000
CT_URL_DEFAULT = "https://crt.sh/"


class CTLogAdapter(ToolAdapter):
    capability = Capability.CERT_TRANSPARENCY
    description = "Certificate Transparency log search via crt.sh"
    supported_target_types = ("domain", "url")

    def __init__(self, base_url: str = CT_URL_DEFAULT, user_agent: str = "easm-discovery/1.0"):
        self.base_url = base_url
        self.user_agent = user_agent

    def run(self, target: str, params: Dict[str, Any], deadline: float,
            cancel: threading.Event) -> CertFindings:
        params = params or {}
        apex = host_of(target)
        limit = int(params.get("ct_limit", CT_LIMIT_DEFAULT))
        request_timeout = min(float(params.get("timeout", 30)), remaining(deadline))
        if request_timeout <= 0:
            raise AdapterError.timeout("no time left to query crt.sh")

        logger.info("CT Logs: querying crt.sh for *.%s", apex)
        try:
            r = requests.get(
                self.base_url,
                params={"q": f"%.{apex}", "output": "json"},
                timeout=request_timeout,
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            )
        except requests.Timeout as e:
            raise AdapterError.timeout(f"crt.sh did not answer within {request_timeout:.0f}s") from e
        except requests.RequestException as e:
            raise AdapterError.transient(f"crt.sh request failed: {e}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise AdapterError.transient(f"crt.sh returned {r.status_code}")
        if r.status_code != 200:
            raise AdapterError.permanent(f"crt.sh returned {r.status_code}")

        findings = CertFindings(target=apex)
        if cancel.is_set():
            findings.partial = True
            return findings

        body = (r.text or "").strip()
        if not body:
            return findings
        try:
            rows = json.loads(body)
        except json.JSONDecodeError as e:
            # crt.sh serves an HTML error page when overloaded
            raise AdapterError.transient("crt.sh returned a non-JSON body",
                                         output=body[:500]) from e

        findings.names = self.extract_names(apex, rows, limit)
        findings.metadata = {"certificates": len(rows) if isinstance(rows, list) else 0}
        logger.info("CT Logs: found %d unique names for %s", len(findings.names), apex)
        return findings

    @staticmethod
    def extract_names(apex: str, rows: Any, limit: int = CT_LIMIT_DEFAULT) -> List[CertName]:
        """In-scope names from crt.sh rows, keeping the latest-expiring certificate per name."""
        by_name: Dict[str, CertName] = {}
        if not isinstance(rows, list):
            return []

        for row in rows:
            if not isinstance(row, dict):
                continue
            raw_names = str(row.get("name_value") or "").splitlines()
            if row.get("common_name"):
                raw_names.append(str(row["common_name"]))

            for line in raw_names:
                wildcard = line.strip().startswith("*.")
                domain = normalize_domain(line)
                if not domain or not is_valid_domain(domain) or not in_scope(apex, domain):
                    continue

                entry = CertName(
                    name=domain,
                    issuer=row.get("issuer_name") or None,
                    not_before=row.get("not_before") or None,
                    not_after=row.get("not_after") or None,
                    wildcard=wildcard,
                )
                current = by_name.get(domain)
                if current is None:
                    if limit and len(by_name) >= limit:
                        continue
                    by_name[domain] = entry
                elif (entry.not_after or "") > (current.not_after or ""):
                    entry.wildcard = entry.wildcard or current.wildcard
                    by_name[domain] = entry
                elif wildcard:
                    current.wildcard = True

        return [by_name[name] for name in sorted(by_name)]

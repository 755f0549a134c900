# easm/discovery/adapters/nuclei.py
"""
Nuclei vulnerability scan adapter.

Wraps ProjectDiscovery's nuclei binary. Results are read as JSON lines
from stdout while the scan runs, so matches reported before a timeout or
cancellation survive.

Requirements:
    - nuclei binary installed on the worker
    - templates updated: nuclei -update-templates

Params (job configuration["vuln_scan"]):
    severity:          list of severities to include (default: all)
    templates:         list of template paths/ids (-t)
    tags:              list of template tags (-tags)
    exclude_ids:       template ids to skip
    rate_limit:        requests per second (default: 150)
    timeout:           per-request timeout in seconds (default: 10)
    max_host_error:    errors before a host is skipped (default: 30)
    follow_redirects:  default False
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, List, Optional

from ...errors import AdapterError
from ...models import SEVERITIES
from ..base_adapter import Capability, ToolAdapter, VulnFindings, VulnMatch
from ..process import classify_exit, find_binary, run_process

logger = logging.getLogger(__name__)


def parse_line(line: str) -> Optional[VulnMatch]:
    """Parse one nuclei JSONL record. Returns None for noise and non-JSON lines."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(entry, dict):
        return None

    info = entry.get("info") or {}
    template_id = entry.get("template-id") or entry.get("templateID")
    if not info or not template_id:
        return None

    classification = info.get("classification") or {}
    cve_id = classification.get("cve-id")
    if isinstance(cve_id, list):
        cve_id = cve_id[0] if cve_id else None

    cvss_score = classification.get("cvss-score")
    if isinstance(cvss_score, str):
        try:
            cvss_score = float(cvss_score)
        except ValueError:
            cvss_score = None
    elif not isinstance(cvss_score, (int, float)):
        cvss_score = None

    references = info.get("reference") or []
    if isinstance(references, str):
        references = [references]

    severity = (info.get("severity") or "info").lower()
    if severity not in SEVERITIES:
        severity = "info"

    return VulnMatch(
        template_id=template_id,
        host=entry.get("host") or entry.get("matched-at") or "",
        severity=severity,
        name=info.get("name"),
        matched_at=entry.get("matched-at"),
        description=(info.get("description") or "").strip() or None,
        cve_id=cve_id.upper() if isinstance(cve_id, str) else None,
        cvss_score=float(cvss_score) if cvss_score is not None else None,
        references=[str(r) for r in references if r],
        ip=entry.get("ip"),
    )


class NucleiAdapter(ToolAdapter):
    capability = Capability.VULN_SCAN
    description = "Template-based vulnerability scan via nuclei"
    supported_target_types = ("domain", "ip", "url")

    def __init__(self, binary: Optional[str] = None, kill_grace: float = 5.0):
        self.binary = binary
        self.kill_grace = kill_grace

    def build_command(self, binary: str, target: str, params: Dict[str, Any]) -> List[str]:
        cmd = [
            binary,
            "-target", target,
            "-jsonl",
            "-silent",
            "-no-color",
            "-disable-update-check",
            "-no-interactsh",
            "-rate-limit", str(int(params.get("rate_limit", 150))),
            "-timeout", str(int(params.get("timeout", 10))),
            "-max-host-error", str(int(params.get("max_host_error", 30))),
        ]

        severity = params.get("severity") or []
        if severity and set(severity) != set(SEVERITIES):
            cmd.extend(["-severity", ",".join(severity)])

        for template in params.get("templates") or []:
            cmd.extend(["-t", template])

        if params.get("tags"):
            cmd.extend(["-tags", ",".join(params["tags"])])

        for template_id in params.get("exclude_ids") or []:
            cmd.extend(["-exclude-id", template_id])

        if params.get("follow_redirects"):
            cmd.append("-follow-redirects")
        return cmd

    def run(self, target: str, params: Dict[str, Any], deadline: float,
            cancel: threading.Event) -> VulnFindings:
        params = params or {}
        binary = find_binary("nuclei", self.binary)
        if not binary:
            raise AdapterError.permanent("nuclei binary not found. Install nuclei on the worker.")

        cmd = self.build_command(binary, target, params)
        findings = VulnFindings(target=target)

        def _collect(line: str):
            match = parse_line(line)
            if match:
                findings.matches.append(match)

        logger.info("nuclei scanning %s", target)
        proc = run_process(cmd, deadline, cancel, on_line=_collect, kill_grace=self.kill_grace)

        findings.output = proc.output_tail()
        findings.partial = proc.stopped_early
        findings.metadata = {"return_code": proc.returncode,
                             "duration_seconds": proc.duration_seconds,
                             "findings_count": len(findings.matches)}

        if proc.timed_out:
            raise AdapterError.timeout(
                f"nuclei did not finish within the deadline ({len(findings.matches)} findings so far)",
                partial=findings, output=findings.output,
            )

        # 0 = nothing found, 1 = findings found; both are normal
        if not proc.cancelled and proc.returncode not in (0, 1):
            raise AdapterError(classify_exit(proc), f"nuclei exited with code {proc.returncode}",
                               partial=findings if findings.matches else None,
                               output=findings.output)

        logger.info("nuclei finished on %s: %d findings", target, len(findings.matches))
        return findings

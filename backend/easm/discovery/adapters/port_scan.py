# easm/discovery/adapters/port_scan.py
"""
Nmap port scan adapter.

Runs the nmap binary with XML output on stdout (``-oX -``) through the
cooperative process runner and parses the document with python-nmap.
Streaming the XML rather than calling PortScanner.scan() lets a cancelled
or timed-out scan still report every host nmap had finished with: the
document is cut after the last complete ``</host>`` and closed with a
synthetic ``<runstats>`` so python-nmap accepts it.

Requirements:
    - nmap binary installed on the worker (apt install nmap)
    - python-nmap pip package

Params (job configuration["port_scan"]):
    port_range:     "top100" | "top1000" | "all" | "common_web" | "common_all"
                    or a custom nmap port spec (default: "top1000")
    scan_type:      "quick" | "standard" | "deep" (default: "standard")
    version_detect: service version detection -sV (default: True)
    timing:         nmap timing template 0-5 (default: 4)
    udp:            also scan UDP (default: False, needs root)
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, List, Optional

import nmap

from ...errors import AdapterError, AdapterErrorKind
from ..base_adapter import Capability, ObservedPort, PortFindings, ToolAdapter, remaining
from ..process import classify_exit, find_binary, run_process
from ..targets import classify_target, host_of

logger = logging.getLogger(__name__)

PORT_RANGES = {
    "top100": ["--top-ports", "100"],
    "top1000": ["--top-ports", "1000"],
    "all": ["-p-"],
    "common_web": ["-p", "80,443,8080,8443,3000,8000,8888,9090"],
    "common_all": ["-p", "21,22,23,25,53,80,110,111,135,139,143,443,445,993,995,1433,1521,2049,"
                         "2375,3306,3389,5432,5900,6379,8080,8443,9200,11211,27017"],
}

PORT_SPEC_RE = re.compile(r"^[0-9,\-TU:]+$")

_SYNTHETIC_TAIL = (
    '<runstats><finished time="0" timestr="" elapsed="0" summary="partial" exit="error"/>'
    '<hosts up="0" down="0" total="0"/></runstats></nmaprun>'
)

# nmap reports "open|filtered" for UDP probes that got no answer
_STATE_MAP = {
    "open": "open",
    "closed": "closed",
    "filtered": "filtered",
    "open|filtered": "filtered",
    "closed|filtered": "filtered",
    "unfiltered": "closed",
}


def repair_partial_xml(xml: str) -> Optional[str]:
    """Close an interrupted nmap XML document after its last finished host."""
    if "</nmaprun>" in xml:
        return xml
    end = xml.rfind("</host>")
    if end == -1:
        return None
    return xml[: end + len("</host>")] + _SYNTHETIC_TAIL


def build_args(params: Dict[str, Any], target_type: str, host_timeout: int) -> List[str]:
    args: List[str] = []

    timing = max(0, min(5, int(params.get("timing", 4))))
    args.append(f"-T{timing}")

    port_range = str(params.get("port_range", "top1000"))
    if port_range in PORT_RANGES:
        args.extend(PORT_RANGES[port_range])
    elif PORT_SPEC_RE.match(port_range):
        args.extend(["-p", port_range])
    else:
        raise AdapterError.permanent(f"invalid port_range {port_range!r}")

    scan_type = params.get("scan_type", "standard")
    version_detect = params.get("version_detect", True)
    if scan_type == "quick":
        args.extend(["--max-retries", "1"])
    elif version_detect:
        args.append("-sV")
        args.extend(["--version-intensity", "9" if scan_type == "deep" else "5"])

    if params.get("udp"):
        args.extend(["-sS", "-sU"])

    args.extend(["--host-timeout", f"{max(1, host_timeout)}s"])

    # IP / CIDR targets need no resolution
    if target_type in ("ip", "cidr"):
        args.append("-n")
    return args


def parse_scan(scan_result: Dict[str, Any], target: str) -> List[ObservedPort]:
    """Flatten python-nmap's analyse_nmap_xml_scan() result into ObservedPorts."""
    ports: List[ObservedPort] = []
    for ip, host in (scan_result.get("scan") or {}).items():
        hostname = None
        for h in host.get("hostnames") or []:
            if h.get("name") and h.get("type") == "user":
                hostname = h["name"]
                break

        for proto in ("tcp", "udp"):
            for port, info in sorted((host.get(proto) or {}).items()):
                state = _STATE_MAP.get(info.get("state", ""))
                if state is None:
                    continue
                ports.append(ObservedPort(
                    ip=ip,
                    port=int(port),
                    protocol=proto,
                    state=state,
                    service=info.get("name") or None,
                    product=info.get("product") or None,
                    version=info.get("version") or None,
                    extra_info=info.get("extrainfo") or None,
                    hostname=hostname,
                ))
    return ports


class PortScanAdapter(ToolAdapter):
    capability = Capability.PORT_SCAN
    description = "Active port and service scan via nmap"
    supported_target_types = ("domain", "ip", "cidr", "url")

    def __init__(self, binary: Optional[str] = None, kill_grace: float = 5.0):
        self.binary = binary
        self.kill_grace = kill_grace

    def run(self, target: str, params: Dict[str, Any], deadline: float,
            cancel: threading.Event) -> PortFindings:
        params = params or {}
        target_type = classify_target(target)
        host = host_of(target)

        binary = find_binary("nmap", self.binary)
        if not binary:
            raise AdapterError.permanent("nmap binary not found. Install nmap on the worker.")

        try:
            scanner = nmap.PortScanner(nmap_search_path=(binary,))
        except nmap.PortScannerError as e:
            raise AdapterError.permanent(f"nmap unusable: {e}") from e

        args = build_args(params, target_type, int(remaining(deadline)))
        cmd = [binary, "-oX", "-", *args, host]
        logger.info("nmap scanning %s with args: %s", host, " ".join(args))

        proc = run_process(cmd, deadline, cancel, kill_grace=self.kill_grace)

        findings = PortFindings(target=target, output=proc.output_tail())
        findings.metadata = {"arguments": args, "return_code": proc.returncode,
                             "duration_seconds": proc.duration_seconds}

        xml = proc.stdout()
        if proc.stopped_early:
            xml = repair_partial_xml(xml)
            findings.partial = True
        elif proc.returncode != 0:
            kind = classify_exit(proc)
            raise AdapterError(kind, f"nmap exited with code {proc.returncode}",
                               output=proc.output_tail())

        if xml:
            try:
                scan_result = scanner.analyse_nmap_xml_scan(nmap_xml_output=xml)
            except nmap.PortScannerError as e:
                if not proc.stopped_early:
                    raise AdapterError.permanent(f"unparseable nmap output: {e}",
                                                 output=proc.output_tail()) from e
                logger.warning("discarding unparseable partial nmap output for %s: %s", host, e)
            else:
                findings.ports = parse_scan(scan_result, target)

        if proc.timed_out:
            raise AdapterError(AdapterErrorKind.TIMEOUT,
                               f"nmap did not finish within the deadline ({len(findings.ports)} ports so far)",
                               partial=findings, output=proc.output_tail())
        return findings

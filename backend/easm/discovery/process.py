# easm/discovery/process.py
"""
Cooperative runner for external scanning tools.

subprocess.run(timeout=...) can neither be cancelled from another thread
nor hand back the output produced before a timeout, and both matter here:
a half-finished nmap or nuclei run still carries useful results. So
run_process() streams stdout line by line through a reader thread and
checks the cancel event and the deadline between reads.

Stop sequence (cancel or deadline): SIGTERM, wait ``kill_grace`` seconds,
then SIGKILL. Lines read before the stop are returned; nothing written
after it is read. Output is decoded as UTF-8 with undecodable bytes
replaced, so a stray byte never ends the stream early.
"""

from __future__ import annotations

import logging
import os
import queue
import re
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from ..errors import AdapterError, AdapterErrorKind

logger = logging.getLogger(__name__)

_EOF = object()

# stderr fragments that mean "try again later" rather than "this will never work"
TRANSIENT_ERROR_PATTERNS = re.compile(
    r"network is unreachable|temporary failure|connection (?:refused|reset|timed out)"
    r"|no route to host|too many open files|resource temporarily unavailable"
    r"|rate limit|try again",
    re.IGNORECASE,
)

MAX_STDERR_LINES = 200


@dataclass
class ProcessResult:
    command: List[str]
    returncode: Optional[int]
    lines: List[str] = field(default_factory=list)
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def stopped_early(self) -> bool:
        return self.timed_out or self.cancelled

    def stdout(self) -> str:
        return "\n".join(self.lines)

    def output_tail(self, limit: int = 2000) -> str:
        """Captured stderr (or stdout if stderr is empty), truncated from the front."""
        text = self.stderr.strip() or self.stdout().strip()
        return text[-limit:]


def find_binary(name: str, configured: Optional[str] = None) -> Optional[str]:
    """Locate a tool binary: configured path first, then PATH, then usual install dirs."""
    if configured:
        if os.path.isfile(configured) and os.access(configured, os.X_OK):
            return configured
        return shutil.which(configured)

    binary = shutil.which(name)
    if binary:
        return binary

    for path in (
        f"/usr/local/bin/{name}",
        f"/usr/bin/{name}",
        os.path.expanduser(f"~/go/bin/{name}"),
        os.path.expanduser(f"~/.local/bin/{name}"),
    ):
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
    return None


def classify_exit(result: ProcessResult) -> AdapterErrorKind:
    """Map a failed exit to an error kind using recognised stderr fragments."""
    if TRANSIENT_ERROR_PATTERNS.search(result.stderr or ""):
        return AdapterErrorKind.TRANSIENT
    return AdapterErrorKind.PERMANENT


def _pump(stream, sink: Callable[[str], None], done: Callable[[], None]):
    try:
        for line in iter(stream.readline, ""):
            sink(line.rstrip("\r\n"))
    except (OSError, ValueError):
        # stream closed underneath us during termination
        pass
    finally:
        done()


def _terminate(proc: subprocess.Popen, kill_grace: float):
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=kill_grace)
    except subprocess.TimeoutExpired:
        logger.warning("pid %d ignored SIGTERM for %.1fs, killing", proc.pid, kill_grace)
        proc.kill()
        proc.wait()
    except ProcessLookupError:
        pass


def run_process(
    cmd: Sequence[str],
    deadline: float,
    cancel: threading.Event,
    *,
    on_line: Optional[Callable[[str], None]] = None,
    poll_interval: float = 0.2,
    kill_grace: float = 5.0,
    env: Optional[dict] = None,
) -> ProcessResult:
    """
    Run ``cmd`` until it exits, ``deadline`` (time.monotonic()) passes or
    ``cancel`` is set. Raises AdapterError(permanent) if the binary cannot
    be started.
    """
    cmd = [str(c) for c in cmd]
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=env,
        )
    except FileNotFoundError as e:
        raise AdapterError.permanent(f"binary not found: {cmd[0]}") from e
    except PermissionError as e:
        raise AdapterError.permanent(f"binary not executable: {cmd[0]}") from e

    logger.debug("started pid %d: %s", proc.pid, " ".join(cmd))

    out_q: "queue.Queue" = queue.Queue()
    err_lines: deque = deque(maxlen=MAX_STDERR_LINES)

    readers = [
        threading.Thread(
            target=_pump, args=(proc.stdout, out_q.put, lambda: out_q.put(_EOF)),
            name=f"pump-out-{proc.pid}", daemon=True,
        ),
        threading.Thread(
            target=_pump, args=(proc.stderr, err_lines.append, lambda: None),
            name=f"pump-err-{proc.pid}", daemon=True,
        ),
    ]
    for t in readers:
        t.start()

    result = ProcessResult(command=cmd, returncode=None)

    def _take(item) -> bool:
        if item is _EOF:
            return False
        result.lines.append(item)
        if on_line is not None:
            on_line(item)
        return True

    stdout_open = True
    while True:
        if cancel.is_set():
            result.cancelled = True
            break
        if time.monotonic() >= deadline:
            result.timed_out = True
            break
        if stdout_open:
            try:
                item = out_q.get(timeout=poll_interval)
            except queue.Empty:
                continue
            stdout_open = _take(item)
            continue
        # stdout closed, wait for the exit status
        try:
            proc.wait(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            continue

    if result.stopped_early:
        _terminate(proc, kill_grace)
        # keep what was already read off the pipe, drop the rest
        while True:
            try:
                item = out_q.get_nowait()
            except queue.Empty:
                break
            if not _take(item):
                break

    for t in readers:
        t.join(timeout=1.0)

    result.returncode = proc.poll()
    result.stderr = "\n".join(err_lines)
    result.duration_seconds = round(time.monotonic() - start, 2)

    logger.debug(
        "pid %d finished rc=%s lines=%d timed_out=%s cancelled=%s in %.1fs",
        proc.pid, result.returncode, len(result.lines),
        result.timed_out, result.cancelled, result.duration_seconds,
    )
    return result

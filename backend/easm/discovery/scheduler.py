# easm/discovery/scheduler.py
"""
Discovery job scheduler: the core engine.

Lifecycle
    pending ──claim──▶ running ──finalize──▶ completed | failed
       │                  │
       └──────cancel──────┴──▶ cancelled

Every transition goes through a conditional update in JobStore, so:
- a job is claimed by at most one worker, even across processes
- started_at / completed_at are stamped once
- terminal jobs stay terminal (retry() enqueues a new job instead)

Execution
- The adapters a job needs (TASK_CAPABILITIES, or configuration
  "capabilities") run concurrently on a per-job thread pool.
- Each adapter attempt gets its own deadline. Transient errors are retried
  with exponential backoff (default 2 retries). A timeout is retried once,
  a second timeout is final. Permanent errors are never retried.
- Findings recovered by failed attempts are kept and merged.
- A failing adapter only fails the job if no required adapter succeeded.
- A hard ceiling bounds the whole execution. Past it, and after a
  cancellation, adapters get ``cancel_grace`` seconds to wind down before
  they are abandoned and their late output discarded.
- shutdown() winds running jobs down the same way; they end Failed
  (summary "interrupted") unless a user cancelled them first.

Concurrency
- dispatch() fills up to ``max_concurrent_jobs`` slots per worker, each
  job on its own thread with its own app context / DB session.
- Adapter threads never touch the database.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from flask import has_app_context

from ..errors import (
    AdapterError, AdapterErrorKind, ConcurrencyConflict, InvalidInput, StoreUnavailable,
)
from ..models import DiscoveryJob, JobStatus, TaskType, now_utc
from .adapters import TASK_CAPABILITIES
from .asset_store import AssetStore
from .base_adapter import Capability, RawFindings, ToolAdapter
from .job_store import JobStore
from .merger import InventoryMerger, MergeSummary
from .normalizer import EntityDelta, ResultNormalizer
from .targets import classify_target

logger = logging.getLogger(__name__)

MAX_LOG_CHARS = 64_000
MAX_OUTPUT_CHARS = 2_000

# an adapter returning this long after its deadline is treated as timed out
LATE_RETURN_TOLERANCE = 1.0

# per-job overrides of SchedulerSettings, all positive numbers
NUMERIC_OPTIONS = ("adapter_timeout", "hard_timeout", "max_parallel_adapters")


@dataclass
class SchedulerSettings:
    max_concurrent_jobs: int = 4
    adapter_timeout: float = 300.0
    hard_timeout: float = 1800.0
    max_retries: int = 2
    backoff_base: float = 2.0
    cancel_grace: float = 10.0
    poll_interval: float = 0.5
    status_check_interval: float = 2.0
    claim_batch: int = 10
    stale_margin: float = 60.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SchedulerSettings":
        return cls(
            max_concurrent_jobs=int(config.get("DISCOVERY_MAX_CONCURRENT_JOBS", cls.max_concurrent_jobs)),
            adapter_timeout=float(config.get("DISCOVERY_ADAPTER_TIMEOUT", cls.adapter_timeout)),
            hard_timeout=float(config.get("DISCOVERY_HARD_TIMEOUT", cls.hard_timeout)),
            max_retries=int(config.get("DISCOVERY_MAX_RETRIES", cls.max_retries)),
            backoff_base=float(config.get("DISCOVERY_BACKOFF_BASE", cls.backoff_base)),
            cancel_grace=float(config.get("DISCOVERY_CANCEL_GRACE", cls.cancel_grace)),
        )


class JobLog:
    """Thread-safe, capability-tagged transcript persisted to DiscoveryJob.logs."""

    def __init__(self, previous: str = ""):
        self._lock = threading.Lock()
        self._lines: List[str] = [previous.rstrip("\n")] if previous else []

    def add(self, tag: str, level: str, message: str):
        stamp = now_utc().strftime("%Y-%m-%dT%H:%M:%SZ")
        with self._lock:
            self._lines.append(f"{stamp} [{tag}] {level}: {message}")

    def add_output(self, tag: str, output: str):
        output = (output or "").strip()
        for line in output[-MAX_OUTPUT_CHARS:].splitlines():
            if line.strip():
                self.add(tag, "OUTPUT", line.rstrip())

    def text(self) -> str:
        with self._lock:
            text = "\n".join(self._lines)
        return text[-MAX_LOG_CHARS:]


@dataclass
class AdapterOutcome:
    capability: str
    succeeded: bool = False
    findings: List[RawFindings] = field(default_factory=list)
    error_kind: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    duration_seconds: float = 0.0

    def as_dict(self) -> dict:
        return {
            "capability": self.capability,
            "status": "completed" if self.succeeded else "failed",
            "attempts": self.attempts,
            "observations": sum(f.count() for f in self.findings),
            "error_kind": self.error_kind,
            "error": self.error,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ExecutionOutcome:
    job_id: int
    organization_id: int
    started_at: Optional[datetime] = None
    adapters: List[AdapterOutcome] = field(default_factory=list)
    abandoned: List[str] = field(default_factory=list)
    cancelled: bool = False
    interrupted: bool = False          # stopped by worker shutdown, not by a user
    hard_timeout: bool = False
    log: JobLog = field(default_factory=JobLog)

    @property
    def findings(self) -> List[RawFindings]:
        return [f for a in self.adapters for f in a.findings]

    @property
    def succeeded(self) -> bool:
        return not (self.hard_timeout or self.interrupted) and any(a.succeeded for a in self.adapters)


class JobScheduler:
    """
    Owns the job queue and drives jobs through their lifecycle.

    Public methods expect to run inside a Flask app context, except
    dispatch() and shutdown(), which are safe to call from background
    threads and push their own contexts.
    """

    def __init__(
        self,
        app=None,
        adapters: Optional[Mapping[Capability, ToolAdapter]] = None,
        settings: Optional[SchedulerSettings] = None,
        job_store: Optional[JobStore] = None,
        asset_store: Optional[AssetStore] = None,
        normalizer: Optional[ResultNormalizer] = None,
        merger: Optional[InventoryMerger] = None,
    ):
        self.app = app
        self.adapters: Dict[Capability, ToolAdapter] = dict(adapters or {})
        self.settings = settings or SchedulerSettings()
        self.jobs = job_store or JobStore()
        self.normalizer = normalizer or ResultNormalizer()
        self.merger = merger or InventoryMerger(asset_store or AssetStore())

        self._cancel_events: Dict[int, threading.Event] = {}
        self._events_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self.settings.max_concurrent_jobs)
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()
        self._stopping = threading.Event()

    # ── Queue ───────────────────────────────────────────────────────

    def capabilities_for(self, task_type: TaskType, configuration: Mapping[str, Any]) -> Tuple[Capability, ...]:
        override = configuration.get("capabilities")
        if not override:
            return TASK_CAPABILITIES[task_type]
        if not isinstance(override, (list, tuple)):
            raise InvalidInput("configuration.capabilities must be a list")
        try:
            return tuple(dict.fromkeys(Capability(c) for c in override))
        except ValueError as e:
            raise InvalidInput(f"unknown capability in {list(override)!r}") from e

    def enqueue(self, organization_id: int, task_type: str, target: str,
                configuration: Optional[Dict[str, Any]] = None,
                retry_of: Optional[int] = None) -> int:
        """Validate and insert a Pending job. Raises InvalidInput."""
        try:
            task = TaskType(task_type)
        except ValueError:
            raise InvalidInput(f"unsupported task type {task_type!r}") from None

        target = (target or "").strip()
        if not target:
            raise InvalidInput("target must not be empty")
        target_type = classify_target(target)
        if target_type is None:
            raise InvalidInput(f"target {target!r} is not a domain, IP, CIDR or URL")

        if configuration is None:
            configuration = {}
        if not isinstance(configuration, dict):
            raise InvalidInput("configuration must be an object")

        if isinstance(organization_id, bool):
            raise InvalidInput("organization_id must be an integer")
        try:
            organization_id = int(organization_id)
        except (TypeError, ValueError):
            raise InvalidInput("organization_id must be an integer") from None

        for cap in self.capabilities_for(task, configuration):
            adapter = self.adapters.get(cap)
            if adapter is None:
                raise InvalidInput(f"no adapter available for {cap.value}")
            if not adapter.supports_target_type(target_type):
                raise InvalidInput(f"{cap.value} cannot scan a {target_type} target")
            params = configuration.get(cap.value)
            if params is not None and not isinstance(params, dict):
                raise InvalidInput(f"configuration.{cap.value} must be an object")

        for key in NUMERIC_OPTIONS:
            if key not in configuration:
                continue
            value = configuration[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise InvalidInput(f"configuration.{key} must be a positive number")
        if "max_parallel_adapters" in configuration and not isinstance(configuration["max_parallel_adapters"], int):
            raise InvalidInput("configuration.max_parallel_adapters must be an integer")

        job = DiscoveryJob(
            organization_id=organization_id,
            task_type=task.value,
            target=target,
            configuration=configuration,
            status=JobStatus.PENDING.value,
            retry_of=retry_of,
        )
        job_id = self.jobs.insert(job)
        logger.info("Discovery job #%d enqueued: org=%d task=%s target=%s",
                    job_id, organization_id, task.value, target)
        return job_id

    def claim_next(self, worker_id: str) -> Optional[DiscoveryJob]:
        """Claim the oldest Pending job for ``worker_id``, or return None."""
        for job in self.jobs.list_pending(self.settings.claim_batch):
            job_id = job.id
            try:
                self._claim(job_id, worker_id)
            except ConcurrencyConflict:
                logger.debug("Discovery job #%d: claim race lost, trying next", job_id)
                continue
            logger.info("Discovery job #%d claimed by %s", job_id, worker_id)
            return self.jobs.get(job_id)
        return None

    def _claim(self, job_id: int, worker_id: str):
        claimed = self.jobs.try_claim(
            job_id, JobStatus.PENDING, JobStatus.RUNNING,
            worker_id=worker_id, started_at=now_utc(),
        )
        if not claimed:
            raise ConcurrencyConflict(job_id)

    def retry(self, job_id: int) -> int:
        """Enqueue a fresh job for the same request as a finished one."""
        job = self.jobs.get(job_id)
        if job is None:
            raise InvalidInput(f"job #{job_id} does not exist")
        if not JobStatus(job.status).is_terminal:
            raise InvalidInput(f"job #{job_id} is {job.status}; only finished jobs can be retried")
        return self.enqueue(job.organization_id, job.task_type, job.target,
                            dict(job.configuration or {}), retry_of=job.id)

    def cancel(self, job_id: int) -> bool:
        """
        Cancel a Pending or Running job. Returns False if the job is already
        terminal (or unknown). In-flight adapters are signalled and finalize()
        still merges what they return within the grace period.
        """
        job = self.jobs.get(job_id)
        if job is None:
            return False
        now = now_utc()
        if job.started_at and job.started_at > now:
            now = job.started_at

        for current in (JobStatus.PENDING, JobStatus.RUNNING):
            if self.jobs.update_status(job_id, JobStatus.CANCELLED, expected=current, completed_at=now):
                with self._events_lock:
                    event = self._cancel_events.get(job_id)
                if event is not None:
                    event.set()
                logger.info("Discovery job #%d cancelled (was %s)", job_id, current.value)
                return True
        return False

    # ── Execution ───────────────────────────────────────────────────

    def execute(self, job: DiscoveryJob) -> ExecutionOutcome:
        """Run the job's adapters and collect their findings. Never raises for adapter errors."""
        s = self.settings
        job_id = job.id
        configuration = dict(job.configuration or {})
        target = job.target
        outcome = ExecutionOutcome(job_id=job_id, organization_id=job.organization_id,
                                   started_at=job.started_at, log=JobLog(job.logs or ""))
        log = outcome.log
        cancel = self._register(job_id)

        try:
            capabilities = self.capabilities_for(TaskType(job.task_type), configuration)
        except (InvalidInput, ValueError) as e:
            log.add("scheduler", "PERMANENT", str(e))
            return outcome

        adapter_timeout = float(configuration.get("adapter_timeout", s.adapter_timeout))
        hard_timeout = float(configuration.get("hard_timeout", s.hard_timeout))
        fan_out = int(configuration.get("max_parallel_adapters", len(capabilities)))
        fan_out = max(1, min(fan_out, len(capabilities)))

        names = ", ".join(c.value for c in capabilities)
        log.add("scheduler", "INFO", f"running {job.task_type} on {target} with {names}")
        logger.info("Discovery job #%d: target=%s task=%s adapters=[%s]",
                    job_id, target, job.task_type, names)

        hard_deadline = time.monotonic() + hard_timeout
        pool = ThreadPoolExecutor(max_workers=fan_out, thread_name_prefix=f"discovery-{job_id}")
        futures: Dict[Future, Capability] = {}
        for cap in capabilities:
            adapter = self.adapters.get(cap)
            if adapter is None:
                log.add(cap.value, "PERMANENT", "no adapter registered")
                outcome.adapters.append(AdapterOutcome(cap.value, error_kind="permanent",
                                                       error="no adapter registered"))
                continue
            params = dict(configuration.get(cap.value) or {})
            future = pool.submit(self._run_adapter, adapter, target, params,
                                 adapter_timeout, hard_deadline, cancel, log)
            futures[future] = cap

        pending = set(futures)
        stop_deadline: Optional[float] = None
        next_status_check = time.monotonic()
        try:
            while pending:
                done, pending = wait(pending, timeout=s.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    outcome.adapters.append(future.result())
                if not pending:
                    break

                now = time.monotonic()
                if stop_deadline is None:
                    if not cancel.is_set() and now >= next_status_check:
                        next_status_check = now + s.status_check_interval
                        if self._cancelled_elsewhere(job_id):
                            cancel.set()
                    if cancel.is_set():
                        stop_deadline = now + s.cancel_grace
                        reason = "worker shutting down" if self._stopping.is_set() else "cancellation requested"
                        log.add("scheduler", "CANCELLED",
                                f"{reason}, waiting up to {s.cancel_grace:g}s for adapters")
                    elif now >= hard_deadline:
                        outcome.hard_timeout = True
                        cancel.set()
                        stop_deadline = now + s.cancel_grace
                        log.add("scheduler", "TIMEOUT", f"job exceeded its hard ceiling of {hard_timeout:g}s")
                elif now >= stop_deadline:
                    for future in pending:
                        name = futures[future].value
                        outcome.abandoned.append(name)
                        log.add(name, "ABANDONED", "did not stop within the grace period, output discarded")
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if cancel.is_set() and not outcome.hard_timeout:
            # shutdown() sets the same event; only a stored Cancelled status means a user cancel
            if self._stopping.is_set() and not self._cancelled_elsewhere(job_id):
                outcome.interrupted = True
            else:
                outcome.cancelled = True

        logger.info(
            "Discovery job #%d executed: %d/%d adapters succeeded%s%s%s",
            job_id, sum(1 for a in outcome.adapters if a.succeeded), len(capabilities),
            " (cancelled)" if outcome.cancelled else "",
            " (interrupted)" if outcome.interrupted else "",
            " (hard timeout)" if outcome.hard_timeout else "",
        )
        return outcome

    def _run_adapter(self, adapter: ToolAdapter, target: str, params: Dict[str, Any],
                     timeout: float, hard_deadline: float, cancel: threading.Event,
                     log: JobLog) -> AdapterOutcome:
        """Run one adapter with bounded retries. Runs on a pool thread; never raises."""
        name = adapter.capability_name()
        result = AdapterOutcome(capability=name)
        start = time.monotonic()
        timeouts = 0

        while True:
            result.attempts += 1
            deadline = min(time.monotonic() + timeout, hard_deadline)
            try:
                findings = adapter.run(target, params, deadline, cancel)
                overrun = time.monotonic() - deadline
                if overrun > LATE_RETURN_TOLERANCE:
                    raise AdapterError.timeout(f"returned {overrun:.1f}s after its deadline",
                                               partial=findings, output=findings.output)
            except AdapterError as e:
                error = e
            except Exception as e:
                logger.exception("Adapter %s crashed on %s", name, target)
                error = AdapterError.permanent(f"{type(e).__name__}: {e}")
            else:
                result.findings.append(findings)
                result.succeeded = True
                result.error_kind = result.error = None
                log.add(name, "INFO", f"attempt {result.attempts} returned {findings.count()} observations"
                        + (" (partial)" if findings.partial else ""))
                log.add_output(name, findings.output)
                break

            if error.partial is not None:
                result.findings.append(error.partial)
            result.error_kind = error.kind.value
            result.error = error.message
            log.add(name, error.kind.value.upper(), f"attempt {result.attempts}: {error.message}")
            log.add_output(name, error.output)
            logger.warning("Adapter %s attempt %d on %s failed (%s): %s",
                           name, result.attempts, target, error.kind.value, error.message)

            if error.kind is AdapterErrorKind.TIMEOUT:
                timeouts += 1
            retryable = (error.kind is AdapterErrorKind.TRANSIENT
                         or (error.kind is AdapterErrorKind.TIMEOUT and timeouts == 1))
            if not retryable or cancel.is_set():
                break
            if result.attempts > self.settings.max_retries:
                log.add(name, "PERMANENT", f"giving up after {result.attempts} attempts")
                break

            delay = self.settings.backoff_base * (2 ** (result.attempts - 1))
            if delay > 0 and cancel.wait(delay):
                break

        result.duration_seconds = round(time.monotonic() - start, 2)
        return result

    def _cancelled_elsewhere(self, job_id: int) -> bool:
        try:
            return self.jobs.get_status(job_id) == JobStatus.CANCELLED.value
        except StoreUnavailable as e:
            logger.warning("Discovery job #%d: status check failed: %s", job_id, e)
            return False

    # ── Finalize ────────────────────────────────────────────────────

    def finalize(self, job: DiscoveryJob, outcome: ExecutionOutcome) -> None:
        """
        Merge collected findings and record the terminal state. Raises
        StoreUnavailable if the merge or the status write fails; the job
        then stays Running until a fresh attempt or reap_stale() resolves it.
        """
        job_id = outcome.job_id
        log = outcome.log
        try:
            merge = self._merge(outcome)

            if outcome.cancelled:
                status = JobStatus.CANCELLED
            elif outcome.succeeded:
                status = JobStatus.COMPLETED
            else:
                status = JobStatus.FAILED

            summary = {
                **merge.as_dict(),
                "adapters": [a.as_dict() for a in outcome.adapters],
                "abandoned": outcome.abandoned,
                "hard_timeout": outcome.hard_timeout,
                "interrupted": outcome.interrupted,
            }
            if outcome.interrupted:
                log.add("scheduler", "PERMANENT", "interrupted by worker shutdown")
            log.add("scheduler", "INFO",
                    f"finished {status.value}: {merge.assets} assets, {merge.ports} ports, "
                    f"{merge.technologies} technologies, {merge.vulnerabilities} vulnerabilities")

            completed_at = now_utc()
            if outcome.started_at and outcome.started_at > completed_at:
                completed_at = outcome.started_at

            if status is JobStatus.CANCELLED:
                # cancel() normally made the transition and stamped completed_at already
                saved = self.jobs.update_status(job_id, JobStatus.CANCELLED, expected=JobStatus.CANCELLED,
                                                log=log.text(), summary=summary)
                if not saved and not self.jobs.update_status(
                        job_id, JobStatus.CANCELLED, expected=JobStatus.RUNNING,
                        completed_at=completed_at, log=log.text(), summary=summary):
                    logger.warning("Discovery job #%d is %s, not marking it cancelled",
                                   job_id, self.jobs.get_status(job_id))
                    return
            else:
                moved = self.jobs.update_status(job_id, status, expected=JobStatus.RUNNING,
                                                completed_at=completed_at, log=log.text(), summary=summary)
                if not moved:
                    current = self.jobs.get_status(job_id)
                    if current == JobStatus.CANCELLED.value:
                        log.add("scheduler", "CANCELLED", "cancelled while finishing, findings kept")
                        self.jobs.update_status(job_id, JobStatus.CANCELLED, expected=JobStatus.CANCELLED,
                                                log=log.text(), summary=summary)
                        status = JobStatus.CANCELLED
                    else:
                        logger.warning("Discovery job #%d is %s, not overwriting with %s",
                                       job_id, current, status.value)
                        return

            logger.info("Discovery job #%d %s", job_id, status.value)
        finally:
            self._unregister(job_id)

    def _merge(self, outcome: ExecutionOutcome) -> MergeSummary:
        deltas: List[EntityDelta] = []
        for findings in outcome.findings:
            try:
                deltas.extend(self.normalizer.normalize(outcome.organization_id, findings))
            except Exception as e:
                logger.exception("Discovery job #%d: could not normalize %s output",
                                 outcome.job_id, findings.source)
                outcome.log.add(findings.source, "PERMANENT", f"output could not be normalized: {e}")
        if not deltas:
            return MergeSummary()
        return self.merger.apply(outcome.job_id, deltas)

    def run_claimed(self, job: DiscoveryJob) -> None:
        """Execute and finalize a Running job. A crash in execute() still ends the job as Failed."""
        try:
            outcome = self.execute(job)
        except Exception as e:
            logger.exception("Discovery job #%d: execution crashed", job.id)
            outcome = ExecutionOutcome(job_id=job.id, organization_id=job.organization_id,
                                       started_at=job.started_at, log=JobLog(job.logs or ""))
            outcome.log.add("scheduler", "PERMANENT", f"execution failed: {type(e).__name__}: {e}")
        self.finalize(job, outcome)

    def run_next(self, worker_id: str) -> Optional[int]:
        """Claim, execute and finalize one job on the calling thread."""
        job = self.claim_next(worker_id)
        if job is None:
            return None
        job_id = job.id
        self.run_claimed(job)
        return job_id

    # ── Worker plumbing ─────────────────────────────────────────────

    def dispatch(self, worker_id: str) -> int:
        """Claim jobs into free slots and run each on its own thread. Returns jobs started."""
        started = 0
        while not self._stopping.is_set() and self._slots.acquire(blocking=False):
            try:
                job_id = self._with_context(self._claim_id, worker_id)
            except StoreUnavailable as e:
                self._slots.release()
                logger.warning("dispatch: job store unavailable: %s", e)
                break
            if job_id is None:
                self._slots.release()
                break
            self._job_pool().submit(self._run_in_slot, job_id)
            started += 1
        return started

    def _claim_id(self, worker_id: str) -> Optional[int]:
        job = self.claim_next(worker_id)
        return job.id if job is not None else None

    def _run_in_slot(self, job_id: int):
        try:
            with self.app.app_context():
                job = self.jobs.get(job_id)
                if job is not None:
                    self.run_claimed(job)
        except StoreUnavailable as e:
            logger.error("Discovery job #%d aborted, store unavailable: %s", job_id, e)
        except Exception:
            logger.exception("Discovery job #%d crashed", job_id)
        finally:
            self._slots.release()

    def reap_stale(self, now: Optional[datetime] = None) -> int:
        """Fail Running jobs nobody finished within their hard ceiling (dead worker, lost store)."""
        s = self.settings
        now = now or now_utc()
        cutoff = now - timedelta(seconds=s.hard_timeout + s.cancel_grace + s.stale_margin)
        reaped = 0
        for job in self.jobs.list_stale(cutoff):
            with self._events_lock:
                if job.id in self._cancel_events:
                    continue
            try:
                ceiling = float((job.configuration or {}).get("hard_timeout", s.hard_timeout))
            except (TypeError, ValueError):
                ceiling = s.hard_timeout
            if job.started_at + timedelta(seconds=ceiling + s.cancel_grace + s.stale_margin) > now:
                continue
            log = JobLog(job.logs or "")
            log.add("scheduler", "TIMEOUT", "no result within the hard ceiling, execution abandoned")
            if self.jobs.update_status(job.id, JobStatus.FAILED, expected=JobStatus.RUNNING,
                                       completed_at=max(now, job.started_at), log=log.text()):
                logger.warning("Discovery job #%d reaped (claimed by %s at %s)",
                               job.id, job.claimed_by, job.started_at)
                reaped += 1
        return reaped

    def shutdown(self, wait: bool = True):
        """Stop claiming and wind down running jobs; they end as Failed unless a user cancelled them."""
        self._stopping.set()
        with self._events_lock:
            for event in self._cancel_events.values():
                event.set()
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    # ── Helpers ─────────────────────────────────────────────────────

    def _job_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.settings.max_concurrent_jobs, thread_name_prefix="discovery-job",
                )
            return self._pool

    def _with_context(self, fn: Callable, *args, **kwargs):
        if self.app is None or has_app_context():
            return fn(*args, **kwargs)
        with self.app.app_context():
            return fn(*args, **kwargs)

    def _register(self, job_id: int) -> threading.Event:
        with self._events_lock:
            event = self._cancel_events.get(job_id)
            if event is None:
                event = self._cancel_events[job_id] = threading.Event()
            return event

    def _unregister(self, job_id: int):
        with self._events_lock:
            self._cancel_events.pop(job_id, None)

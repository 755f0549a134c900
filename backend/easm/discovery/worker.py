# easm/discovery/worker.py
"""
Background discovery worker.

Uses APScheduler to poll the job queue. Two interval jobs:
  - dispatch:   claim Pending jobs into free slots (DISCOVERY_POLL_INTERVAL)
  - reap_stale: fail Running jobs abandoned by a dead worker (every 60s)

Several workers (threads in one process, or separate processes) may share
one database; claiming is a conditional update so each job runs once.

Setup in the app factory:
    from easm.discovery.worker import start_worker
    start_worker(app)
"""
from __future__ import annotations

import logging
import os
import socket
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import StoreUnavailable
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)

REAP_INTERVAL_SECONDS = 60


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class DiscoveryWorker:

    def __init__(self, app, scheduler: JobScheduler, worker_id: Optional[str] = None,
                 poll_interval: Optional[float] = None):
        self.app = app
        self.scheduler = scheduler
        self.worker_id = worker_id or app.config.get("DISCOVERY_WORKER_ID") or default_worker_id()
        self.poll_interval = float(poll_interval or app.config.get("DISCOVERY_POLL_INTERVAL", 5))
        self._background: Optional[BackgroundScheduler] = None

    def tick(self) -> int:
        """One polling round. Returns the number of jobs started."""
        started = self.scheduler.dispatch(self.worker_id)
        if started:
            logger.info("Worker %s started %d discovery job(s)", self.worker_id, started)
        return started

    def reap(self) -> int:
        with self.app.app_context():
            try:
                count = self.scheduler.reap_stale()
            except StoreUnavailable as e:
                logger.warning("Stale job check skipped: %s", e)
                return 0
        if count:
            logger.warning("Reaped %d stale discovery job(s)", count)
        return count

    def start(self):
        if self._background is not None:
            logger.info("Discovery worker already running")
            return

        self._background = BackgroundScheduler(daemon=True)
        self._background.add_job(
            func=self.tick,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id="discovery_dispatch",
            name="Claim and run pending discovery jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._background.add_job(
            func=self.reap,
            trigger=IntervalTrigger(seconds=REAP_INTERVAL_SECONDS),
            id="discovery_reaper",
            name="Fail stale discovery jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._background.start()
        logger.info("Discovery worker %s started (polling every %gs)", self.worker_id, self.poll_interval)

    def stop(self, wait: bool = False):
        """Gracefully stop polling and signal in-flight jobs."""
        if self._background is not None:
            self._background.shutdown(wait=False)
            self._background = None
        self.scheduler.shutdown(wait=wait)
        logger.info("Discovery worker %s stopped", self.worker_id)


def start_worker(app) -> Optional[DiscoveryWorker]:
    """Start the in-process worker unless DISCOVERY_WORKER_ENABLED is off."""
    if not app.config.get("DISCOVERY_WORKER_ENABLED", True):
        logger.info("Discovery worker disabled (DISCOVERY_WORKER_ENABLED is false)")
        return None

    existing = app.extensions.get("discovery_worker")
    if existing is not None:
        return existing

    worker = DiscoveryWorker(app, app.extensions["discovery_scheduler"])
    worker.start()
    app.extensions["discovery_worker"] = worker
    return worker

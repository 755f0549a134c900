#!/usr/bin/env python3
"""
worker.py

Runs the discovery worker as its own process, separate from the API.
Any number of these may point at the same database.

Usage:
    # Poll forever (Ctrl-C to stop):
    python worker.py

    # Claim and run at most one pending job, then exit:
    python worker.py --once

Run from backend/ (where easm/ lives).
"""

import argparse
import logging
import signal
import sys
import threading

from easm import create_app
from easm.discovery.worker import DiscoveryWorker

logger = logging.getLogger("easm.worker")


def run_once(app, worker_id=None):
    scheduler = app.extensions["discovery_scheduler"]
    worker_id = worker_id or DiscoveryWorker(app, scheduler).worker_id
    with app.app_context():
        job_id = scheduler.run_next(worker_id)
    if job_id is None:
        print("No pending discovery jobs.")
        return 0
    with app.app_context():
        job = scheduler.jobs.get(job_id)
        print(f"Job #{job_id}: {job.status}")
        return 0 if job.status == "completed" else 1


def run_forever(app, worker_id=None):
    worker = DiscoveryWorker(app, app.extensions["discovery_scheduler"], worker_id=worker_id)
    stop = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    worker.start()
    stop.wait()
    worker.stop(wait=True)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the EASM discovery worker.")
    parser.add_argument("--once", action="store_true", help="run at most one pending job and exit")
    parser.add_argument("--worker-id", help="identity recorded on claimed jobs")
    args = parser.parse_args(argv)

    # this process drives its own worker; never start the in-app one too
    app = create_app({"DISCOVERY_WORKER_ENABLED": False})

    if args.once:
        return run_once(app, args.worker_id)
    return run_forever(app, args.worker_id)


if __name__ == "__main__":
    sys.exit(main())

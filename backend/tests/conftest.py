"""
Shared fixtures.

Each test gets its own app bound to a throwaway SQLite file (a file rather
than :memory: so worker threads share the same database), with the schema
created and the background worker disabled.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

import pytest

from easm import create_app
from easm.discovery.base_adapter import (
    Capability, ObservedPort, PortFindings, ToolAdapter, VulnFindings, VulnMatch,
)
from easm.discovery.scheduler import JobScheduler, SchedulerSettings
from easm.extensions import db
from easm.models import now_utc

ALL_TARGET_TYPES = ("domain", "ip", "cidr", "url")


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'easm.db'}",
        "CREATE_SCHEMA": True,
        "DISCOVERY_WORKER_ENABLED": False,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


class ScriptedAdapter(ToolAdapter):
    """
    Fake adapter whose attempts follow a script. Each step is returned
    (RawFindings), raised (exceptions) or called with the run() arguments
    (callables). The last step repeats once the script runs out.
    """

    def __init__(self, capability: Capability, *script, target_types=ALL_TARGET_TYPES):
        self.capability = capability
        self.supported_target_types = target_types
        self.script = list(script)
        self.calls = 0

    def run(self, target, params, deadline, cancel):
        self.calls += 1
        step = self.script[min(self.calls - 1, len(self.script) - 1)]
        if callable(step) and not isinstance(step, type):
            step = step(target, params, deadline, cancel)
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture
def settings():
    return SchedulerSettings(
        max_concurrent_jobs=2,
        adapter_timeout=5,
        hard_timeout=10,
        max_retries=2,
        backoff_base=0,
        cancel_grace=1,
        poll_interval=0.01,
        status_check_interval=0.02,
    )


@pytest.fixture
def make_scheduler(app, settings):
    created = []

    def _make(*adapters, **overrides) -> JobScheduler:
        scheduler = JobScheduler(
            app=app,
            adapters={a.capability: a for a in adapters},
            settings=replace(settings, **overrides),
        )
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.shutdown(wait=True)


def port_findings(target: str, *ports, observed_at: Optional[datetime] = None,
                  partial: bool = False) -> PortFindings:
    """ports: (port, service) or (port, service, state) tuples on ``target``."""
    findings = PortFindings(target=target, partial=partial)
    if observed_at is not None:
        findings.observed_at = observed_at
    for entry in ports:
        port, service = entry[0], entry[1]
        state = entry[2] if len(entry) > 2 else "open"
        findings.ports.append(ObservedPort(ip=target, port=port, service=service, state=state))
    return findings


def vuln_findings(host: str, template_id: str, observed_at: datetime, **fields) -> VulnFindings:
    findings = VulnFindings(target=host, observed_at=observed_at)
    findings.matches.append(VulnMatch(template_id=template_id, host=host, **fields))
    return findings


def minutes_ago(n: float) -> datetime:
    return now_utc() - timedelta(minutes=n)

"""Job lifecycle: enqueue, claim, execute, finalize, cancel, retry, reap."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from conftest import ScriptedAdapter, port_findings
from easm.discovery import scheduler as scheduler_module
from easm.discovery.base_adapter import Capability, CertFindings, CertName, DnsFindings, DnsRecord
from easm.errors import AdapterError, InvalidInput
from easm.extensions import db
from easm.models import Asset, DiscoveryJob, JobAssetLink, JobStatus, Port, now_utc

TARGET = "192.0.2.1"


def _job(scheduler, job_id) -> DiscoveryJob:
    return scheduler.jobs.get(job_id)


def _wait_for_status(scheduler, job_id, statuses, timeout=5.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        status = scheduler.jobs.get_status(job_id)
        if status in statuses:
            return status
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} stuck in {scheduler.jobs.get_status(job_id)}")


# ═══════════════════════════════════════════════════════════════
# Enqueue
# ═══════════════════════════════════════════════════════════════

class TestEnqueue:

    def test_creates_pending_job(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET, {"port_scan": {"port_range": "top100"}})

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.started_at is None and job.completed_at is None
        assert job.configuration == {"port_scan": {"port_range": "top100"}}

    @pytest.mark.parametrize("task_type,target,config", [
        ("not_a_task", TARGET, None),
        ("port_scan", "", None),
        ("port_scan", "   ", None),
        ("port_scan", "not a host!", None),
        ("port_scan", TARGET, ["not", "a", "mapping"]),
        ("port_scan", TARGET, {"capabilities": ["teleport"]}),
        ("port_scan", TARGET, {"port_scan": ["top100"]}),
        ("port_scan", TARGET, {"hard_timeout": "soon"}),
        ("port_scan", TARGET, {"hard_timeout": True}),
        ("port_scan", TARGET, {"adapter_timeout": 0}),
        ("port_scan", TARGET, {"max_parallel_adapters": 1.5}),
    ])
    def test_rejects_invalid_requests(self, make_scheduler, task_type, target, config):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        with pytest.raises(InvalidInput):
            scheduler.enqueue(1, task_type, target, config)
        assert DiscoveryJob.query.count() == 0

    def test_rejects_target_type_the_adapter_cannot_scan(self, make_scheduler):
        ct = ScriptedAdapter(Capability.CERT_TRANSPARENCY, CertFindings(target="x"),
                             target_types=("domain",))
        scheduler = make_scheduler(ct)
        with pytest.raises(InvalidInput, match="cannot scan"):
            scheduler.enqueue(1, "certificate_transparency", TARGET)

    def test_rejects_task_without_registered_adapter(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        with pytest.raises(InvalidInput, match="vuln_scan"):
            scheduler.enqueue(1, "vulnerability_scan", TARGET)


# ═══════════════════════════════════════════════════════════════
# Claim
# ═══════════════════════════════════════════════════════════════

class TestClaim:

    def test_nothing_pending(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        assert scheduler.claim_next("w1") is None

    def test_claims_oldest_and_stamps_start(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        first = scheduler.enqueue(1, "port_scan", TARGET)
        scheduler.enqueue(1, "port_scan", "192.0.2.2")

        job = scheduler.claim_next("w1")
        assert job.id == first
        assert job.status == JobStatus.RUNNING.value
        assert job.claimed_by == "w1"
        assert job.started_at is not None

    def test_concurrent_claims_have_one_winner(self, app, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        workers = 8
        barrier = threading.Barrier(workers)
        claimed = []

        def _claim(n):
            with app.app_context():
                barrier.wait()
                job = scheduler.claim_next(f"w{n}")
                if job is not None:
                    claimed.append((job.id, job.claimed_by))

        threads = [threading.Thread(target=_claim, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(claimed) == 1
        assert claimed[0][0] == job_id
        assert _job(scheduler, job_id).claimed_by == claimed[0][1]

    def test_cancelled_job_is_never_claimed(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        assert scheduler.cancel(job_id)
        assert scheduler.claim_next("w1") is None


# ═══════════════════════════════════════════════════════════════
# Execute + finalize
# ═══════════════════════════════════════════════════════════════

class TestRunJob:

    def test_port_scan_populates_inventory(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN,
                                  port_findings(TARGET, (80, "nginx"), (22, "ssh")))
        scheduler = make_scheduler(adapter)
        job_id = scheduler.enqueue(7, "port_scan", TARGET)

        assert scheduler.run_next("w1") == job_id

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.completed_at >= job.started_at
        assert job.summary["ports"] == 2
        assert "[port_scan] INFO" in job.logs

        asset = Asset.query.filter_by(organization_id=7, asset_type="ip", value=TARGET).one()
        assert sorted((p.port_number, p.service_name) for p in asset.ports) == [(22, "ssh"), (80, "nginx")]
        assert JobAssetLink.query.filter_by(job_id=job_id, asset_id=asset.id).count() == 1

    def test_one_failed_capability_does_not_fail_the_job(self, make_scheduler):
        dns = ScriptedAdapter(Capability.DNS_ENUM, DnsFindings(
            target="example.com", records=[DnsRecord("example.com", "A", "192.0.2.10")]))
        ct = ScriptedAdapter(Capability.CERT_TRANSPARENCY, AdapterError.permanent("crt.sh returned 400"))
        scheduler = make_scheduler(dns, ct)
        job_id = scheduler.enqueue(1, "dns_enumeration", "example.com")

        scheduler.run_next("w1")

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert "[cert_transparency] PERMANENT" in job.logs
        statuses = {a["capability"]: a["status"] for a in job.summary["adapters"]}
        assert statuses == {"dns_enum": "completed", "cert_transparency": "failed"}

    def test_all_capabilities_failing_fails_the_job(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN, AdapterError.permanent("nmap binary not found"))
        scheduler = make_scheduler(adapter)
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        scheduler.run_next("w1")

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.completed_at >= job.started_at
        assert adapter.calls == 1

    def test_timeout_of_only_capability_fails_job(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN, AdapterError.timeout("nmap did not finish"))
        scheduler = make_scheduler(adapter)
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        scheduler.run_next("w1")

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "[port_scan] TIMEOUT" in job.logs
        # retried once, then final
        assert adapter.calls == 2

    def test_partial_findings_from_timeout_are_merged(self, make_scheduler):
        partial = port_findings(TARGET, (443, "https"), partial=True)
        adapter = ScriptedAdapter(Capability.PORT_SCAN,
                                  AdapterError.timeout("nmap did not finish", partial=partial))
        scheduler = make_scheduler(adapter)
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        scheduler.run_next("w1")

        assert _job(scheduler, job_id).status == JobStatus.FAILED.value
        assert Port.query.filter_by(port_number=443).count() == 1

    def test_transient_errors_are_retried(self, make_scheduler):
        adapter = ScriptedAdapter(
            Capability.PORT_SCAN,
            AdapterError.transient("network is unreachable"),
            AdapterError.transient("network is unreachable"),
            port_findings(TARGET, (80, "http")),
        )
        scheduler = make_scheduler(adapter)
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        scheduler.run_next("w1")

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert adapter.calls == 3
        assert job.logs.count("[port_scan] TRANSIENT") == 2

    def test_transient_retries_are_bounded(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN, AdapterError.transient("rate limit"))
        scheduler = make_scheduler(adapter, max_retries=2)
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        scheduler.run_next("w1")

        assert _job(scheduler, job_id).status == JobStatus.FAILED.value
        assert adapter.calls == 3

    def test_adapter_crash_is_a_permanent_failure(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN, RuntimeError("boom"))
        scheduler = make_scheduler(adapter)
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        scheduler.run_next("w1")

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "RuntimeError: boom" in job.logs
        assert adapter.calls == 1

    def test_execution_crash_still_finishes_the_job(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET))
        scheduler = make_scheduler(adapter)
        # written directly, enqueue() would refuse this configuration
        job_id = scheduler.jobs.insert(DiscoveryJob(organization_id=1, task_type="port_scan",
                                                    target=TARGET, configuration={"hard_timeout": "soon"}))

        assert scheduler.run_next("w1") == job_id

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.completed_at >= job.started_at
        assert "PERMANENT" in job.logs
        assert "execution failed: ValueError" in job.logs
        assert job_id not in scheduler._cancel_events
        assert adapter.calls == 0

    def test_late_result_counts_as_timeout_but_is_kept(self, make_scheduler, monkeypatch):
        monkeypatch.setattr(scheduler_module, "LATE_RETURN_TOLERANCE", 0.0)

        def _slow(target, params, deadline, cancel):
            time.sleep(0.1)
            return port_findings(TARGET, (8080, "http-proxy"))

        adapter = ScriptedAdapter(Capability.PORT_SCAN, _slow)
        scheduler = make_scheduler(adapter, adapter_timeout=0.02)
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        scheduler.run_next("w1")

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "after its deadline" in job.logs
        assert Port.query.filter_by(port_number=8080).count() == 1

    def test_hard_ceiling_fails_job_and_keeps_output(self, make_scheduler):
        def _until_cancelled(target, params, deadline, cancel):
            cancel.wait(5)
            return port_findings(TARGET, (25, "smtp"), partial=True)

        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, _until_cancelled))
        job_id = scheduler.enqueue(1, "port_scan", TARGET, {"hard_timeout": 0.1})

        scheduler.run_next("w1")

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert "hard ceiling" in job.logs
        assert job.summary["hard_timeout"] is True
        assert Port.query.filter_by(port_number=25).count() == 1

    def test_adapter_ignoring_cancel_is_abandoned(self, make_scheduler):
        def _stubborn(target, params, deadline, cancel):
            time.sleep(1.0)
            return port_findings(TARGET, (3306, "mysql"))

        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, _stubborn), cancel_grace=0.1)
        job_id = scheduler.enqueue(1, "port_scan", TARGET, {"hard_timeout": 0.05})

        started = time.monotonic()
        scheduler.run_next("w1")
        assert time.monotonic() - started < 0.9

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.summary["abandoned"] == ["port_scan"]
        assert Port.query.count() == 0

    def test_capability_override_from_configuration(self, make_scheduler):
        dns = ScriptedAdapter(Capability.DNS_ENUM, DnsFindings(target="example.com"))
        ct = ScriptedAdapter(Capability.CERT_TRANSPARENCY, CertFindings(
            target="example.com", names=[CertName("api.example.com", issuer="R3")]))
        scheduler = make_scheduler(dns, ct)
        job_id = scheduler.enqueue(1, "dns_enumeration", "example.com",
                                   {"capabilities": ["cert_transparency"]})

        scheduler.run_next("w1")

        assert _job(scheduler, job_id).status == JobStatus.COMPLETED.value
        assert dns.calls == 0 and ct.calls == 1
        asset = Asset.query.filter_by(value="api.example.com").one()
        assert asset.attributes["cert_issuer"] == "R3"

    def test_params_are_passed_per_capability(self, make_scheduler):
        seen = {}

        def _record(target, params, deadline, cancel):
            seen.update(params)
            return port_findings(TARGET)

        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, _record))
        scheduler.enqueue(1, "port_scan", TARGET, {"port_scan": {"port_range": "top100"}})
        scheduler.run_next("w1")

        assert seen == {"port_range": "top100"}


# ═══════════════════════════════════════════════════════════════
# Cancel
# ═══════════════════════════════════════════════════════════════

class TestCancel:

    def test_cancel_pending(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)

        assert scheduler.cancel(job_id) is True

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.CANCELLED.value
        assert job.completed_at is not None
        assert job.started_at is None

    def test_cancel_terminal_job_is_refused(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        scheduler.run_next("w1")
        completed_at = _job(scheduler, job_id).completed_at

        assert scheduler.cancel(job_id) is False

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.completed_at == completed_at

    def test_cancel_unknown_job(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        assert scheduler.cancel(999) is False

    def _run_in_background(self, app, scheduler):
        def _run():
            with app.app_context():
                scheduler.run_next("w1")

        thread = threading.Thread(target=_run)
        thread.start()
        return thread

    def test_cancel_running_job_keeps_findings(self, app, make_scheduler):
        started = threading.Event()

        def _until_cancelled(target, params, deadline, cancel):
            started.set()
            cancel.wait(5)
            return port_findings(TARGET, (80, "http"), partial=True)

        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, _until_cancelled))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        thread = self._run_in_background(app, scheduler)

        assert started.wait(5)
        assert scheduler.cancel(job_id) is True
        thread.join(10)
        assert not thread.is_alive()

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.CANCELLED.value
        assert job.completed_at >= job.started_at
        assert "CANCELLED" in job.logs
        assert Port.query.filter_by(port_number=80).count() == 1

    def test_cancel_from_another_process_is_observed(self, app, make_scheduler):
        started = threading.Event()
        observed = threading.Event()

        def _until_cancelled(target, params, deadline, cancel):
            started.set()
            if cancel.wait(5):
                observed.set()
            return port_findings(TARGET, partial=True)

        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, _until_cancelled))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        thread = self._run_in_background(app, scheduler)

        assert started.wait(5)
        # a different process only shares the database
        assert scheduler.jobs.update_status(job_id, JobStatus.CANCELLED, expected=JobStatus.RUNNING,
                                            completed_at=now_utc())
        thread.join(10)

        assert observed.is_set()
        assert _job(scheduler, job_id).status == JobStatus.CANCELLED.value

    def test_shutdown_fails_running_job_and_keeps_findings(self, app, make_scheduler):
        started = threading.Event()

        def _until_cancelled(target, params, deadline, cancel):
            started.set()
            cancel.wait(5)
            return port_findings(TARGET, (80, "http"), partial=True)

        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, _until_cancelled))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        thread = self._run_in_background(app, scheduler)

        assert started.wait(5)
        scheduler.shutdown(wait=False)
        thread.join(10)
        assert not thread.is_alive()

        db.session.expire_all()
        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.completed_at >= job.started_at
        assert "worker shutting down" in job.logs
        assert "interrupted by worker shutdown" in job.logs
        assert job.summary["interrupted"] is True
        assert Port.query.filter_by(port_number=80).count() == 1

        # a stopped scheduler claims nothing new
        scheduler.enqueue(1, "port_scan", TARGET)
        assert scheduler.dispatch("w1") == 0

    def test_user_cancel_survives_shutdown(self, app, make_scheduler):
        started = threading.Event()

        def _until_cancelled(target, params, deadline, cancel):
            started.set()
            cancel.wait(5)
            return port_findings(TARGET, partial=True)

        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, _until_cancelled))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        thread = self._run_in_background(app, scheduler)

        assert started.wait(5)
        assert scheduler.jobs.update_status(job_id, JobStatus.CANCELLED, expected=JobStatus.RUNNING,
                                            completed_at=now_utc())
        scheduler.shutdown(wait=False)
        thread.join(10)

        db.session.expire_all()
        job = _job(scheduler, job_id)
        assert job.status == JobStatus.CANCELLED.value
        assert job.summary["interrupted"] is False


# ═══════════════════════════════════════════════════════════════
# Retry / reap / dispatch
# ═══════════════════════════════════════════════════════════════

class TestRetry:

    def test_retry_creates_linked_job(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN, AdapterError.permanent("nope"))
        scheduler = make_scheduler(adapter)
        job_id = scheduler.enqueue(3, "port_scan", TARGET, {"port_scan": {"port_range": "top100"}})
        scheduler.run_next("w1")

        new_id = scheduler.retry(job_id)

        new = _job(scheduler, new_id)
        assert new_id != job_id
        assert new.retry_of == job_id
        assert new.status == JobStatus.PENDING.value
        assert (new.organization_id, new.task_type, new.target) == (3, "port_scan", TARGET)
        assert new.configuration == {"port_scan": {"port_range": "top100"}}
        assert _job(scheduler, job_id).status == JobStatus.FAILED.value

    def test_only_finished_jobs_can_be_retried(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        with pytest.raises(InvalidInput):
            scheduler.retry(job_id)
        with pytest.raises(InvalidInput):
            scheduler.retry(12345)


class TestReapStale:

    def test_reaps_job_past_its_ceiling(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET)
        scheduler.claim_next("dead-worker")

        assert scheduler.reap_stale(now=now_utc() + timedelta(seconds=30)) == 0
        assert scheduler.reap_stale(now=now_utc() + timedelta(hours=2)) == 1

        job = _job(scheduler, job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.completed_at >= job.started_at
        assert "TIMEOUT" in job.logs

    def test_per_job_ceiling_is_respected(self, make_scheduler):
        scheduler = make_scheduler(ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET)))
        job_id = scheduler.enqueue(1, "port_scan", TARGET, {"hard_timeout": 7200})
        scheduler.claim_next("w1")

        assert scheduler.reap_stale(now=now_utc() + timedelta(hours=1)) == 0
        assert _job(scheduler, job_id).status == JobStatus.RUNNING.value


class TestDispatch:

    def test_runs_jobs_on_background_threads(self, make_scheduler):
        adapter = ScriptedAdapter(Capability.PORT_SCAN, port_findings(TARGET, (80, "http")))
        scheduler = make_scheduler(adapter, max_concurrent_jobs=2)
        ids = [scheduler.enqueue(1, "port_scan", TARGET) for _ in range(3)]

        assert scheduler.dispatch("w1") == 2
        for job_id in ids[:2]:
            assert _wait_for_status(scheduler, job_id, {"completed"}) == "completed"

        # slots are released once jobs finish
        started, end = 0, time.monotonic() + 5
        while not started and time.monotonic() < end:
            started = scheduler.dispatch("w1")
            time.sleep(0.02)
        assert started == 1
        assert _wait_for_status(scheduler, ids[2], {"completed"}) == "completed"

        db.session.expire_all()
        assert Port.query.count() == 1

"""HTTP surface of the discovery blueprint."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from conftest import minutes_ago, port_findings
from easm.discovery.merger import InventoryMerger
from easm.discovery.normalizer import ResultNormalizer
from easm.errors import StoreUnavailable
from easm.models import JobStatus


def _create(client, **overrides):
    body = {"organizationId": 1, "taskType": "dns_enumeration", "target": "example.com"}
    body.update(overrides)
    return client.post("/discovery/jobs", json=body)


def _scheduler(app):
    return app.extensions["discovery_scheduler"]


class TestCreateJob:

    def test_returns_pending_job(self, client):
        resp = _create(client, configuration={"dns_enum": {"bruteforce": True}})
        assert resp.status_code == 202
        data = resp.get_json()
        assert data["status"] == "pending"
        assert data["task_type"] == "dns_enumeration"
        assert data["configuration"] == {"dns_enum": {"bruteforce": True}}
        assert data["started_at"] is None

    def test_snake_case_body(self, client):
        resp = client.post("/discovery/jobs", json={
            "organization_id": 3, "task_type": "port_scan", "target": "192.0.2.0/28",
        })
        assert resp.status_code == 202
        assert resp.get_json()["organization_id"] == 3

    @pytest.mark.parametrize("overrides", [
        {"organizationId": None},
        {"taskType": "teleport"},
        {"target": ""},
        {"target": "not a host"},
        {"configuration": ["nope"]},
        # CT lookups need a domain
        {"taskType": "certificate_transparency", "target": "192.0.2.1"},
    ])
    def test_invalid_requests(self, client, overrides):
        resp = _create(client, **overrides)
        assert resp.status_code == 400
        assert resp.get_json()["error"]


class TestListJobs:

    def test_filters_by_organization_and_status(self, client, app):
        first = _create(client).get_json()["id"]
        _create(client, target="example.org")
        _create(client, organizationId=2)
        _scheduler(app).cancel(first)

        resp = client.get("/discovery/jobs?organizationId=1")
        data = resp.get_json()
        assert resp.status_code == 200
        assert data["total"] == 2

        cancelled = client.get("/discovery/jobs?organizationId=1&status=cancelled").get_json()
        assert [j["id"] for j in cancelled["items"]] == [first]

    @pytest.mark.parametrize("query", ["", "?organizationId=abc", "?organizationId=1&limit=x",
                                       "?organizationId=1&status=paused"])
    def test_bad_query(self, client, query):
        assert client.get(f"/discovery/jobs{query}").status_code == 400

    def test_store_outage_is_503(self, client, app):
        with patch.object(_scheduler(app).jobs, "list_for_organization",
                          side_effect=StoreUnavailable("connection refused")):
            resp = client.get("/discovery/jobs?organizationId=1")
        assert resp.status_code == 503
        assert resp.get_json()["error"] == "Service unavailable"


class TestJobDetail:

    def test_includes_linked_assets(self, client):
        job_id = _create(client, taskType="port_scan", target="192.0.2.1").get_json()["id"]
        deltas = ResultNormalizer().normalize(1, port_findings("192.0.2.1", (80, "http"),
                                                               observed_at=minutes_ago(1)))
        InventoryMerger().apply(job_id, deltas)

        data = client.get(f"/discovery/jobs/{job_id}").get_json()
        assert [(a["assetType"], a["value"]) for a in data["assets"]] == [("ip", "192.0.2.1")]
        assert data["assets"][0]["lastSeen"].endswith("Z")

    def test_unknown_job(self, client):
        resp = client.get("/discovery/jobs/999")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Discovery job not found."


class TestCancelJob:

    def test_cancel_then_cancel_again(self, client, app):
        job_id = _create(client).get_json()["id"]

        resp = client.post(f"/discovery/jobs/{job_id}/cancel")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "cancelled", "jobId": job_id}
        assert _scheduler(app).jobs.get_status(job_id) == JobStatus.CANCELLED.value

        again = client.post(f"/discovery/jobs/{job_id}/cancel")
        assert again.status_code == 400
        assert "cancelled" in again.get_json()["error"]

    def test_unknown_job(self, client):
        assert client.post("/discovery/jobs/999/cancel").status_code == 404


class TestRetryJob:

    def test_retry_finished_job(self, client):
        job_id = _create(client, configuration={"dns_enum": {"wordlist": ["www"]}}).get_json()["id"]
        client.post(f"/discovery/jobs/{job_id}/cancel")

        resp = client.post(f"/discovery/jobs/{job_id}/retry")
        data = resp.get_json()
        assert resp.status_code == 202
        assert data["retry_of"] == job_id
        assert data["status"] == "pending"
        assert data["configuration"] == {"dns_enum": {"wordlist": ["www"]}}

    def test_pending_job_cannot_be_retried(self, client):
        job_id = _create(client).get_json()["id"]
        assert client.post(f"/discovery/jobs/{job_id}/retry").status_code == 400

    def test_unknown_job(self, client):
        assert client.post("/discovery/jobs/999/retry").status_code == 404


class TestAppErrors:

    def test_health(self, client):
        assert client.get("/health").get_json() == {"status": "up and running"}

    def test_unknown_route_is_json_404(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"

    def test_wrong_method_is_json_405(self, client):
        assert client.delete("/discovery/jobs").status_code == 405

# easm/discovery/routes.py
"""
Discovery API routes.

  POST /discovery/jobs                   enqueue a discovery job
  GET  /discovery/jobs                   list jobs for an organization
  GET  /discovery/jobs/<id>              job detail + linked assets
  POST /discovery/jobs/<id>/cancel       cancel a pending or running job
  POST /discovery/jobs/<id>/retry        enqueue a fresh copy of a finished job

Jobs run asynchronously on the worker; POST returns 202 with the Pending job.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..errors import InvalidInput
from ..extensions import db
from ..models import Asset, JobAssetLink, JobStatus

logger = logging.getLogger(__name__)

discovery_bp = Blueprint("discovery", __name__, url_prefix="/discovery")

MAX_LIST_LIMIT = 200


def _scheduler():
    return current_app.extensions["discovery_scheduler"]


def _serialize_asset(asset: Asset) -> dict:
    return {
        "id": asset.id,
        "assetType": asset.asset_type,
        "value": asset.value,
        "status": asset.status,
        "attributes": asset.attributes or {},
        "firstSeen": asset.first_seen.isoformat() + "Z" if asset.first_seen else None,
        "lastSeen": asset.last_seen.isoformat() + "Z" if asset.last_seen else None,
    }


@discovery_bp.errorhandler(InvalidInput)
def invalid_input(e):
    return jsonify(error=str(e)), 400


# ═══════════════════════════════════════════════════════════════
# POST /discovery/jobs: Enqueue a discovery job
# ═══════════════════════════════════════════════════════════════

@discovery_bp.post("/jobs")
def create_job():
    body: Dict[str, Any] = request.get_json(silent=True) or {}

    org_id = body.get("organizationId", body.get("organization_id"))
    if org_id is None:
        return jsonify(error="organizationId is required."), 400

    task_type = (body.get("taskType") or body.get("task_type") or "").strip().lower()
    target = body.get("target") or ""
    configuration = body.get("configuration") or body.get("config") or {}

    scheduler = _scheduler()
    job_id = scheduler.enqueue(org_id, task_type, target, configuration)
    job = scheduler.jobs.get(job_id)
    return jsonify(job.to_dict()), 202


# ═══════════════════════════════════════════════════════════════
# GET /discovery/jobs: List discovery jobs
# ═══════════════════════════════════════════════════════════════

@discovery_bp.get("/jobs")
def list_jobs():
    try:
        org_id = int(request.args.get("organizationId", request.args.get("organization_id", "")))
        limit = min(int(request.args.get("limit", 50)), MAX_LIST_LIMIT)
    except ValueError:
        return jsonify(error="organizationId and limit must be integers."), 400

    status_filter = request.args.get("status")
    if status_filter and status_filter not in {s.value for s in JobStatus}:
        return jsonify(error=f"Unknown status '{status_filter}'."), 400

    jobs = _scheduler().jobs.list_for_organization(org_id, status=status_filter, limit=limit)
    return jsonify(items=[j.to_dict() for j in jobs], total=len(jobs), limit=limit), 200


# ═══════════════════════════════════════════════════════════════
# GET /discovery/jobs/<id>: Job detail
# ═══════════════════════════════════════════════════════════════

@discovery_bp.get("/jobs/<int:job_id>")
def get_job(job_id: int):
    job = _scheduler().jobs.get(job_id)
    if not job:
        return jsonify(error="Discovery job not found."), 404

    assets = (
        db.session.query(Asset)
        .join(JobAssetLink, JobAssetLink.asset_id == Asset.id)
        .filter(JobAssetLink.job_id == job_id)
        .order_by(Asset.asset_type, Asset.value)
        .all()
    )
    data = job.to_dict()
    data["assets"] = [_serialize_asset(a) for a in assets]
    return jsonify(data), 200


# ═══════════════════════════════════════════════════════════════
# POST /discovery/jobs/<id>/cancel
# ═══════════════════════════════════════════════════════════════

@discovery_bp.post("/jobs/<int:job_id>/cancel")
def cancel_job(job_id: int):
    scheduler = _scheduler()
    job = scheduler.jobs.get(job_id)
    if not job:
        return jsonify(error="Discovery job not found."), 404
    if not scheduler.cancel(job_id):
        status = scheduler.jobs.get_status(job_id)
        return jsonify(error=f"Cannot cancel job with status '{status}'."), 400
    return jsonify(status=JobStatus.CANCELLED.value, jobId=job_id), 200


# ═══════════════════════════════════════════════════════════════
# POST /discovery/jobs/<id>/retry
# ═══════════════════════════════════════════════════════════════

@discovery_bp.post("/jobs/<int:job_id>/retry")
def retry_job(job_id: int):
    scheduler = _scheduler()
    if not scheduler.jobs.get(job_id):
        return jsonify(error="Discovery job not found."), 404
    new_id = scheduler.retry(job_id)
    logger.info("Discovery job #%d retried as #%d", job_id, new_id)
    return jsonify(scheduler.jobs.get(new_id).to_dict()), 202

# easm/discovery/job_store.py
"""
Job queue persistence.

Status changes are conditional single-statement UPDATEs
(``... WHERE id = :id AND status = :expected``) and succeed only when
exactly one row matched. That compare-and-swap is what keeps two workers
from claiming the same job and keeps terminal jobs terminal. It holds
across processes because the database does the checking.

``started_at`` / ``completed_at`` are written through COALESCE, so once set
they can never be overwritten.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StoreUnavailable
from ..extensions import db
from ..models import DiscoveryJob, JobStatus

logger = logging.getLogger(__name__)


def _status(value) -> str:
    return value.value if isinstance(value, JobStatus) else str(value)


class JobStore:

    def _fail(self, action: str, e: SQLAlchemyError):
        db.session.rollback()
        logger.error("job store %s failed: %s", action, e)
        raise StoreUnavailable(f"job store {action} failed: {e.__class__.__name__}") from e

    def insert(self, job: DiscoveryJob) -> int:
        try:
            db.session.add(job)
            db.session.commit()
        except SQLAlchemyError as e:
            self._fail("insert", e)
        return job.id

    def try_claim(self, job_id: int, from_status, to_status, *,
                  worker_id: Optional[str] = None, started_at: Optional[datetime] = None) -> bool:
        values: Dict[str, Any] = {"status": _status(to_status)}
        if worker_id is not None:
            values["claimed_by"] = worker_id
        if started_at is not None:
            values["started_at"] = func.coalesce(DiscoveryJob.started_at, started_at)
        return self._conditional_update(job_id, _status(from_status), values, "claim")

    def update_status(self, job_id: int, status, *, expected=None,
                      started_at: Optional[datetime] = None,
                      completed_at: Optional[datetime] = None,
                      log: Optional[str] = None,
                      summary: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move ``job_id`` to ``status`` if it is currently ``expected``.
        Returns False if the job was not in the expected state.
        """
        values: Dict[str, Any] = {"status": _status(status)}
        if started_at is not None:
            values["started_at"] = func.coalesce(DiscoveryJob.started_at, started_at)
        if completed_at is not None:
            values["completed_at"] = func.coalesce(DiscoveryJob.completed_at, completed_at)
        if log is not None:
            values["logs"] = log
        if summary is not None:
            values["summary"] = summary
        return self._conditional_update(
            job_id, _status(expected) if expected is not None else None, values, "status update",
        )

    def _conditional_update(self, job_id: int, expected: Optional[str],
                            values: Dict[str, Any], action: str) -> bool:
        stmt = update(DiscoveryJob).where(DiscoveryJob.id == job_id)
        if expected is not None:
            stmt = stmt.where(DiscoveryJob.status == expected)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        try:
            result = db.session.execute(stmt)
            db.session.commit()
        except SQLAlchemyError as e:
            self._fail(action, e)
        return result.rowcount == 1

    def get(self, job_id: int) -> Optional[DiscoveryJob]:
        try:
            job = db.session.get(DiscoveryJob, job_id)
            if job is not None:
                db.session.refresh(job)
            return job
        except SQLAlchemyError as e:
            self._fail("get", e)

    def get_status(self, job_id: int) -> Optional[str]:
        """Fresh status read that bypasses the session's identity map."""
        try:
            status = db.session.execute(
                select(DiscoveryJob.status).where(DiscoveryJob.id == job_id)
            ).scalar_one_or_none()
            db.session.commit()
            return status
        except SQLAlchemyError as e:
            self._fail("status read", e)

    def list_pending(self, limit: int = 10) -> List[DiscoveryJob]:
        try:
            jobs = list(db.session.execute(
                select(DiscoveryJob)
                .where(DiscoveryJob.status == JobStatus.PENDING.value)
                .order_by(DiscoveryJob.created_at, DiscoveryJob.id)
                .limit(limit)
            ).scalars())
            return jobs
        except SQLAlchemyError as e:
            self._fail("list_pending", e)

    def list_stale(self, started_before: datetime) -> List[DiscoveryJob]:
        try:
            return list(db.session.execute(
                select(DiscoveryJob).where(
                    DiscoveryJob.status == JobStatus.RUNNING.value,
                    DiscoveryJob.started_at < started_before,
                )
            ).scalars())
        except SQLAlchemyError as e:
            self._fail("list_stale", e)

    def list_for_organization(self, organization_id: int, status: Optional[str] = None,
                              limit: int = 50) -> List[DiscoveryJob]:
        q = select(DiscoveryJob).where(DiscoveryJob.organization_id == organization_id)
        if status:
            q = q.where(DiscoveryJob.status == status)
        try:
            return list(db.session.execute(
                q.order_by(DiscoveryJob.created_at.desc(), DiscoveryJob.id.desc()).limit(limit)
            ).scalars())
        except SQLAlchemyError as e:
            self._fail("list", e)

# easm/discovery/asset_store.py
"""
Inventory persistence: constraint-backed upserts.

Every write is a single ``INSERT ... ON CONFLICT (natural key) DO UPDATE``
statement, so two jobs touching the same asset serialize on the unique
index instead of racing through a read-then-write. Conflict resolution
happens inside the statement:

    last_seen   = max(existing, observed)
    first_seen  = min(existing, observed)
    scalars     = observed value if the observation is at least as new as
                  what is stored and the value is not NULL, else existing
    attributes  = shallow per-key merge, the newer observation's keys win, keys
                  absent from it are kept

With these rules re-applying a batch, or applying batches out of order,
lands on the same end state, which is what makes merge retryable.

PostgreSQL (jsonb ``||``) and SQLite (json_set / json_insert per key) are
supported; both replace nested values whole.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StoreUnavailable
from ..extensions import db
from ..models import Asset, JobAssetLink, Port, Technology, Vulnerability, now_utc
from .normalizer import AssetKey

logger = logging.getLogger(__name__)


class AssetStore:

    # ── Transactions ────────────────────────────────────────────────

    @contextmanager
    def transaction(self):
        """Commit on success, roll back and raise StoreUnavailable on database errors."""
        try:
            yield
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("inventory write failed: %s", e)
            raise StoreUnavailable(f"inventory write failed: {e.__class__.__name__}") from e
        except BaseException:
            db.session.rollback()
            raise

    # ── Dialect helpers ─────────────────────────────────────────────

    @staticmethod
    def _dialect() -> str:
        return db.engine.dialect.name

    def _insert(self, model):
        dialect = self._dialect()
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise StoreUnavailable(f"upserts are not supported on {dialect}")

    def _merge_attributes(self, stored, excluded, incoming: Dict[str, Any], newer):
        """
        Shallow per-key merge: a newer observation overwrites the keys it
        carries, an older one only fills keys that are missing. Nested
        values are replaced whole on both dialects (jsonb ``||`` semantics),
        never merged recursively.
        """
        if self._dialect() == "postgresql":
            return case((newer, stored.op("||")(excluded)), else_=excluded.op("||")(stored))
        if not incoming:
            return stored
        # json_patch() would recurse into nested objects and drop null-valued keys
        base = func.coalesce(stored, func.json_object())
        args: List[Any] = []
        for key, value in incoming.items():
            args.extend([f'$."{key}"', func.json(json.dumps(value))])
        return case((newer, func.json_set(base, *args)), else_=func.json_insert(base, *args))

    @staticmethod
    def _newer(excluded, table) -> Any:
        return excluded.last_seen >= table.c.last_seen

    @staticmethod
    def _seen_window(excluded, table) -> Dict[str, Any]:
        return {
            "last_seen": case((excluded.last_seen > table.c.last_seen, excluded.last_seen),
                              else_=table.c.last_seen),
            "first_seen": case((excluded.first_seen < table.c.first_seen, excluded.first_seen),
                               else_=table.c.first_seen),
        }

    @staticmethod
    def _keep_or_take(column: str, excluded, table, newer) -> Any:
        """Incoming non-NULL value if newer (or nothing stored yet), else the stored value."""
        incoming = excluded[column]
        stored = table.c[column]
        return case(
            (and_(incoming.isnot(None), or_(newer, stored.is_(None))), incoming),
            else_=stored,
        )

    # ── Upserts ─────────────────────────────────────────────────────

    def upsert_asset(self, key: AssetKey, attributes: Dict[str, Any], observed_at: datetime,
                     status: str = "active") -> int:
        table = Asset.__table__
        now = now_utc()
        stmt = self._insert(Asset).values(
            organization_id=key.organization_id,
            asset_type=key.asset_type,
            value=key.value,
            status=status,
            attributes=attributes or {},
            first_seen=observed_at,
            last_seen=observed_at,
            created_at=now,
            updated_at=now,
        )
        ex = stmt.excluded
        newer = self._newer(ex, table)
        stmt = stmt.on_conflict_do_update(
            index_elements=["organization_id", "asset_type", "value"],
            set_={
                **self._seen_window(ex, table),
                "status": case((newer, ex.status), else_=table.c.status),
                "attributes": self._merge_attributes(table.c.attributes, ex.attributes,
                                                     attributes or {}, newer),
                "updated_at": now,
            },
        ).returning(table.c.id)
        return db.session.execute(stmt).scalar_one()

    def upsert_port(self, asset_id: int, port_number: int, protocol: str, observed_at: datetime,
                    service_name: Optional[str] = None, banner: Optional[str] = None,
                    status: Optional[str] = None) -> int:
        table = Port.__table__
        stmt = self._insert(Port).values(
            asset_id=asset_id,
            port_number=port_number,
            protocol=protocol,
            service_name=service_name,
            banner=banner,
            status=status or "open",
            first_seen=observed_at,
            last_seen=observed_at,
            updated_at=now_utc(),
        )
        ex = stmt.excluded
        newer = self._newer(ex, table)
        stmt = stmt.on_conflict_do_update(
            index_elements=["asset_id", "port_number", "protocol"],
            set_={
                **self._seen_window(ex, table),
                "service_name": self._keep_or_take("service_name", ex, table, newer),
                "banner": self._keep_or_take("banner", ex, table, newer),
                # status is always observed, so only recency decides
                "status": case((newer, ex.status), else_=table.c.status),
                "updated_at": now_utc(),
            },
        ).returning(table.c.id)
        return db.session.execute(stmt).scalar_one()

    def upsert_technology(self, asset_id: int, name: str, version: str, observed_at: datetime,
                          category: Optional[str] = None) -> int:
        table = Technology.__table__
        stmt = self._insert(Technology).values(
            asset_id=asset_id,
            name=name,
            version=version or "",
            category=category,
            first_seen=observed_at,
            last_seen=observed_at,
            updated_at=now_utc(),
        )
        ex = stmt.excluded
        newer = self._newer(ex, table)
        stmt = stmt.on_conflict_do_update(
            index_elements=["asset_id", "name", "version"],
            set_={
                **self._seen_window(ex, table),
                "category": self._keep_or_take("category", ex, table, newer),
                "updated_at": now_utc(),
            },
        ).returning(table.c.id)
        return db.session.execute(stmt).scalar_one()

    def upsert_vulnerability(self, asset_id: int, template_id: str, observed_at: datetime,
                             source: Optional[str] = None, port_id: Optional[int] = None,
                             severity: Optional[str] = None, title: Optional[str] = None,
                             description: Optional[str] = None, cve_id: Optional[str] = None,
                             cvss_score: Optional[float] = None,
                             references: Optional[List[str]] = None,
                             matched_at: Optional[str] = None) -> int:
        table = Vulnerability.__table__
        stmt = self._insert(Vulnerability).values(
            asset_id=asset_id,
            port_id=port_id,
            template_id=template_id,
            title=title,
            description=description,
            severity=severity or "info",
            cve_id=cve_id,
            cvss_score=cvss_score,
            references_json=references,
            matched_at=matched_at,
            source=source,
            status="open",
            first_seen=observed_at,
            last_seen=observed_at,
            updated_at=now_utc(),
        )
        ex = stmt.excluded
        newer = self._newer(ex, table)
        set_ = {
            column: self._keep_or_take(column, ex, table, newer)
            for column in ("port_id", "title", "description", "cve_id", "cvss_score",
                           "references_json", "matched_at", "source")
        }
        set_["severity"] = case((newer, ex.severity), else_=table.c.severity)
        set_.update(self._seen_window(ex, table))
        set_["updated_at"] = now_utc()
        stmt = stmt.on_conflict_do_update(
            index_elements=["asset_id", "template_id"], set_=set_,
        ).returning(table.c.id)
        return db.session.execute(stmt).scalar_one()

    # ── Relations / lookups ─────────────────────────────────────────

    def link_job_asset(self, job_id: int, asset_id: int) -> None:
        stmt = self._insert(JobAssetLink).values(
            job_id=job_id, asset_id=asset_id, created_at=now_utc(),
        ).on_conflict_do_nothing(index_elements=["job_id", "asset_id"])
        db.session.execute(stmt)

    def find_port_id(self, asset_id: int, port_number: int, protocol: str) -> Optional[int]:
        return db.session.execute(
            select(Port.id).where(
                Port.asset_id == asset_id,
                Port.port_number == port_number,
                Port.protocol == protocol,
            )
        ).scalar_one_or_none()

    def linked_asset_ids(self, job_id: int) -> List[int]:
        return list(db.session.execute(
            select(JobAssetLink.asset_id).where(JobAssetLink.job_id == job_id).order_by(JobAssetLink.asset_id)
        ).scalars())

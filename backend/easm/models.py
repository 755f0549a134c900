from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from .extensions import db


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# JSONB on PostgreSQL so attribute maps can be merged in place during upserts
JSONType = db.JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class TaskType(str, Enum):
    DNS_ENUMERATION = "dns_enumeration"
    PORT_SCAN = "port_scan"
    WEB_APP_SCAN = "web_app_scan"
    CERTIFICATE_TRANSPARENCY = "certificate_transparency"
    VULNERABILITY_SCAN = "vulnerability_scan"


class AssetType(str, Enum):
    DOMAIN = "domain"
    IP = "ip"
    URL = "url"


class AssetStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PortStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    FILTERED = "filtered"


SEVERITIES = ("critical", "high", "medium", "low", "info")


class DiscoveryJob(db.Model):
    """
    One request to run a discovery task against a target.

    Only the scheduler writes ``status`` and the lifecycle timestamps, and it
    does so through conditional updates in ``JobStore``.
    """
    __tablename__ = "discovery_job"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)

    # Request
    task_type = db.Column(db.String(40), nullable=False)          # TaskType values
    target = db.Column(db.String(500), nullable=False)            # domain / ip / cidr / url
    configuration = db.Column(JSONType, nullable=False, default=dict)

    # Execution state
    status = db.Column(db.String(20), nullable=False, default=JobStatus.PENDING.value, index=True)
    claimed_by = db.Column(db.String(120), nullable=True)
    retry_of = db.Column(db.Integer, db.ForeignKey("discovery_job.id", ondelete="SET NULL"), nullable=True)

    # Timing (each set once)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc, index=True)

    # Outcome
    logs = db.Column(db.Text, nullable=True)
    summary = db.Column(JSONType, nullable=True)                  # {"assets": 3, "ports": 2, ...}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "task_type": self.task_type,
            "target": self.target,
            "configuration": self.configuration or {},
            "status": self.status,
            "claimed_by": self.claimed_by,
            "retry_of": self.retry_of,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "summary": self.summary or {},
            "logs": self.logs or "",
        }


class Asset(db.Model):
    __tablename__ = "asset"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)

    asset_type = db.Column(db.String(20), nullable=False)         # AssetType values
    value = db.Column(db.String(1000), nullable=False)            # canonical form
    status = db.Column(db.String(20), nullable=False, default=AssetStatus.ACTIVE.value)
    attributes = db.Column(JSONType, nullable=False, default=dict)

    first_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    last_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        UniqueConstraint("organization_id", "asset_type", "value", name="uq_asset_org_type_value"),
    )

    ports = db.relationship("Port", backref="asset", cascade="all, delete-orphan", passive_deletes=True)
    technologies = db.relationship("Technology", backref="asset", cascade="all, delete-orphan", passive_deletes=True)
    vulnerabilities = db.relationship("Vulnerability", backref="asset", cascade="all, delete-orphan", passive_deletes=True)


class Port(db.Model):
    __tablename__ = "port"

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(db.Integer, db.ForeignKey("asset.id", ondelete="CASCADE"), nullable=False, index=True)

    port_number = db.Column(db.Integer, nullable=False)
    protocol = db.Column(db.String(10), nullable=False, default="tcp")
    service_name = db.Column(db.String(100), nullable=True)
    banner = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=PortStatus.OPEN.value)

    first_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    last_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        UniqueConstraint("asset_id", "port_number", "protocol", name="uq_port_asset_number_protocol"),
    )


class Technology(db.Model):
    __tablename__ = "technology"

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(db.Integer, db.ForeignKey("asset.id", ondelete="CASCADE"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    version = db.Column(db.String(100), nullable=False, default="")   # "" when unknown
    category = db.Column(db.String(100), nullable=True)

    first_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    last_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        UniqueConstraint("asset_id", "name", "version", name="uq_technology_asset_name_version"),
    )


class Vulnerability(db.Model):
    __tablename__ = "vulnerability"

    id = db.Column(db.Integer, primary_key=True)
    asset_id = db.Column(db.Integer, db.ForeignKey("asset.id", ondelete="CASCADE"), nullable=False, index=True)
    port_id = db.Column(db.Integer, db.ForeignKey("port.id", ondelete="SET NULL"), nullable=True)

    template_id = db.Column(db.String(255), nullable=False)
    title = db.Column(db.String(500), nullable=True)
    description = db.Column(db.Text, nullable=True)
    severity = db.Column(db.String(20), nullable=False, default="info")
    cve_id = db.Column(db.String(50), nullable=True)
    cvss_score = db.Column(db.Float, nullable=True)
    references_json = db.Column(JSONType, nullable=True)              # ["https://...", ...]
    matched_at = db.Column(db.String(1000), nullable=True)            # raw detection target
    source = db.Column(db.String(50), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="open")

    first_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    last_seen = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        UniqueConstraint("asset_id", "template_id", name="uq_vulnerability_asset_template"),
    )

    port = db.relationship("Port")


class JobAssetLink(db.Model):
    """Append-only record of which jobs touched which assets."""
    __tablename__ = "job_asset_link"

    job_id = db.Column(db.Integer, db.ForeignKey("discovery_job.id", ondelete="CASCADE"), primary_key=True)
    asset_id = db.Column(db.Integer, db.ForeignKey("asset.id", ondelete="CASCADE"), primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)


def _iso(dt):
    return dt.isoformat() + "Z" if dt else None

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # Store UTC and always hand back aware datetimes, including on drivers that drop tzinfo.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on Postgres, portable JSON elsewhere.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    # Non-prod environments are exempt from automatic quota suspensions unless configured.
    environment: Mapped[str] = mapped_column(String, default="prod")
    # Enforcement state machine: active -> suspended -> active; archived on deletion.
    status: Mapped[str] = mapped_column(String, index=True, default="active")
    suspended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    suspension_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)
    # Logical deletion keeps audit and override history joinable.
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class ProjectCap(Base):
    __tablename__ = "project_caps"

    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), primary_key=True)
    resource: Mapped[str] = mapped_column(String, primary_key=True)
    cap_value: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, onupdate=utc_now)


class ProjectUsage(Base):
    __tablename__ = "project_usage"

    # One counter row per project/resource/day for atomic cap enforcement.
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), primary_key=True)
    resource: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, primary_key=True)
    used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    # Rejected enforcement attempts feed the hard-capped-and-abusive policy.
    denied: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)


class ProjectMember(Base):
    __tablename__ = "project_members"
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_members_user"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), index=True)
    user_id: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # owner/admin members receive enforcement notices.
    role: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class MetricSample(Base):
    __tablename__ = "error_metrics"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String)
    request_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class AccessEvent(Base):
    __tablename__ = "access_events"
    __table_args__ = (
        Index("ix_access_events_project_pattern_time", "project_id", "pattern_type", "occurred_at"),
    )

    # Flagged access events written by request logging for pattern detection.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String)
    pattern_type: Mapped[str] = mapped_column(String)
    source_ip: Mapped[str | None] = mapped_column(String, nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class DetectionRecord(Base):
    __tablename__ = "detection_history"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String)
    detector: Mapped[str] = mapped_column(String, index=True)
    # Pattern type for pattern detections; null for project-wide metrics.
    subject: Mapped[str | None] = mapped_column(String, nullable=True)
    metric_value: Mapped[float] = mapped_column(Float)
    severity: Mapped[str] = mapped_column(String)
    recommended_action: Mapped[str] = mapped_column(String)
    details: Mapped[str] = mapped_column(Text)
    evidence_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Suspension(Base):
    __tablename__ = "suspensions"
    __table_args__ = (
        # At most one open suspension per project.
        Index(
            "uq_suspensions_open_project",
            "project_id",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), index=True)
    reason: Mapped[str] = mapped_column(String)
    # "system" for automated suspensions, otherwise the operator id.
    triggered_by: Mapped[str] = mapped_column(String)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)


class OverrideRecord(Base):
    __tablename__ = "manual_overrides"

    # Immutable audit-grade record of an operator intervention.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"))
    action: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    performed_by: Mapped[str] = mapped_column(String, index=True)
    performed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    # Snapshots of {status, caps} before and after the override.
    previous_state: Mapped[dict[str, Any]] = mapped_column(JSONType)
    new_state: Mapped[dict[str, Any]] = mapped_column(JSONType)


class RateLimitWindow(Base):
    __tablename__ = "rate_limits"
    __table_args__ = (
        UniqueConstraint(
            "identifier_type",
            "identifier_value",
            "window_start",
            name="uq_rate_limits_identifier_window",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    identifier_type: Mapped[str] = mapped_column(String)
    identifier_value: Mapped[str] = mapped_column(String)
    attempt_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    # Monotonic id for ordering and pagination; rows are never updated.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String)
    actor_type: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String, index=True)
    target_type: Mapped[str] = mapped_column(String)
    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    project_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Sanitized structured context; "metadata" is reserved on declarative classes.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), index=True)
    notification_type: Mapped[str] = mapped_column(String)
    subject: Mapped[str] = mapped_column(String)
    body: Mapped[str] = mapped_column(Text)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"
    __table_args__ = (
        Index("ix_notification_deliveries_status_next", "status", "next_attempt_at"),
    )

    # One row per (channel, recipient); retried by the sweep until delivered or dead.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    notification_id: Mapped[str] = mapped_column(String, ForeignKey("notifications.id"), index=True)
    project_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String)
    recipient: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Store optional identity hints without making them required for bootstrap flows.
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Platform role: developer, operator, or admin.
    role: Mapped[str] = mapped_column(String)
    # Gate access for disabled users without deleting historical keys.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


# Descending time indexes for windowed aggregation and newest-first listings.
Index("ix_error_metrics_project_recorded", MetricSample.project_id, MetricSample.recorded_at.desc())
Index("ix_detection_history_project_detected", DetectionRecord.project_id, DetectionRecord.detected_at.desc())
Index("ix_manual_overrides_project_performed", OverrideRecord.project_id, OverrideRecord.performed_at.desc())
Index("ix_audit_logs_project_created", AuditLog.project_id, AuditLog.created_at.desc())

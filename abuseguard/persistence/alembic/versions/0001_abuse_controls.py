"""abuse controls

Revision ID: 0001_abuse_controls
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_abuse_controls"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if default else None,
    )


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("environment", sa.String(), nullable=False, server_default="prod"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        _ts("suspended_at"),
        sa.Column("suspension_reason", sa.String(), nullable=True),
        _ts("created_at", nullable=False, default=True),
        _ts("updated_at", nullable=False, default=True),
        _ts("deleted_at"),
    )
    op.create_index("ix_projects_organization_id", "projects", ["organization_id"])
    op.create_index("ix_projects_owner_id", "projects", ["owner_id"])
    op.create_index("ix_projects_status", "projects", ["status"])

    op.create_table(
        "project_caps",
        sa.Column("project_id", sa.String(), sa.ForeignKey("projects.id"), primary_key=True),
        sa.Column("resource", sa.String(), primary_key=True),
        sa.Column("cap_value", sa.BigInteger(), nullable=False),
        _ts("updated_at", nullable=False, default=True),
    )

    op.create_table(
        "project_usage",
        sa.Column("project_id", sa.String(), sa.ForeignKey("projects.id"), primary_key=True),
        sa.Column("resource", sa.String(), primary_key=True),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("denied", sa.BigInteger(), nullable=False, server_default="0"),
    )

    op.create_table(
        "project_members",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        _ts("created_at", nullable=False, default=True),
        sa.UniqueConstraint("project_id", "user_id", name="uq_project_members_user"),
    )
    op.create_index("ix_project_members_project_id", "project_members", ["project_id"])

    op.create_table(
        "error_metrics",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("recorded_at", nullable=False, default=True),
        sa.CheckConstraint("request_count >= 0 AND error_count >= 0", name="ck_error_metrics_non_negative"),
    )
    op.create_index(
        "ix_error_metrics_project_recorded",
        "error_metrics",
        ["project_id", sa.text("recorded_at DESC")],
    )

    op.create_table(
        "access_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("pattern_type", sa.String(), nullable=False),
        sa.Column("source_ip", sa.String(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
        _ts("occurred_at", nullable=False, default=True),
    )
    op.create_index(
        "ix_access_events_project_pattern_time",
        "access_events",
        ["project_id", "pattern_type", "occurred_at"],
    )

    op.create_table(
        "detection_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("detector", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("metric_value", sa.Float(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("recommended_action", sa.String(), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("evidence_json", postgresql.JSONB(), nullable=True),
        _ts("detected_at", nullable=False, default=True),
    )
    op.create_index("ix_detection_history_detector", "detection_history", ["detector"])
    op.create_index(
        "ix_detection_history_project_detected",
        "detection_history",
        ["project_id", sa.text("detected_at DESC")],
    )

    op.create_table(
        "suspensions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("project_id", sa.String(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("triggered_by", sa.String(), nullable=False),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
        _ts("created_at", nullable=False, default=True),
        _ts("resolved_at"),
        sa.Column("resolved_by", sa.String(), nullable=True),
    )
    op.create_index("ix_suspensions_project_id", "suspensions", ["project_id"])
    # Partial unique index keeps at most one open suspension per project.
    op.create_index(
        "uq_suspensions_open_project",
        "suspensions",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("resolved_at IS NULL"),
    )

    op.create_table(
        "manual_overrides",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("project_id", sa.String(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("performed_by", sa.String(), nullable=False),
        _ts("performed_at", nullable=False, default=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("previous_state", postgresql.JSONB(), nullable=False),
        sa.Column("new_state", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_manual_overrides_performed_by", "manual_overrides", ["performed_by"])
    op.create_index(
        "ix_manual_overrides_project_performed",
        "manual_overrides",
        ["project_id", sa.text("performed_at DESC")],
    )

    op.create_table(
        "rate_limits",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("identifier_type", sa.String(), nullable=False),
        sa.Column("identifier_value", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "identifier_type",
            "identifier_value",
            "window_start",
            name="uq_rate_limits_identifier_window",
        ),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_type", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("project_id", sa.String(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        _ts("created_at", nullable=False, default=True),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index(
        "ix_audit_logs_project_created",
        "audit_logs",
        ["project_id", sa.text("created_at DESC")],
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("project_id", sa.String(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("notification_type", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
        _ts("created_at", nullable=False, default=True),
    )
    op.create_index("ix_notifications_project_id", "notifications", ["project_id"])

    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("notification_id", sa.String(), sa.ForeignKey("notifications.id"), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("next_attempt_at"),
        _ts("last_attempt_at"),
        _ts("delivered_at"),
        _ts("created_at", nullable=False, default=True),
    )
    op.create_index("ix_notification_deliveries_notification_id", "notification_deliveries", ["notification_id"])
    op.create_index("ix_notification_deliveries_project_id", "notification_deliveries", ["project_id"])
    op.create_index(
        "ix_notification_deliveries_status_next",
        "notification_deliveries",
        ["status", "next_attempt_at"],
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False, default=True),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("key_prefix", sa.String(), nullable=False),
        sa.Column("key_hash", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        _ts("expires_at"),
        _ts("last_used_at"),
        _ts("revoked_at"),
        _ts("created_at", nullable=False, default=True),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])
    op.create_index("ix_api_keys_key_hash", "api_keys", ["key_hash"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_api_keys_key_hash", table_name="api_keys")
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("users")
    op.drop_index("ix_notification_deliveries_status_next", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_project_id", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_notification_id", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_index("ix_notifications_project_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_audit_logs_project_created", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("rate_limits")
    op.drop_index("ix_manual_overrides_project_performed", table_name="manual_overrides")
    op.drop_index("ix_manual_overrides_performed_by", table_name="manual_overrides")
    op.drop_table("manual_overrides")
    op.drop_index("uq_suspensions_open_project", table_name="suspensions")
    op.drop_index("ix_suspensions_project_id", table_name="suspensions")
    op.drop_table("suspensions")
    op.drop_index("ix_detection_history_project_detected", table_name="detection_history")
    op.drop_index("ix_detection_history_detector", table_name="detection_history")
    op.drop_table("detection_history")
    op.drop_index("ix_access_events_project_pattern_time", table_name="access_events")
    op.drop_table("access_events")
    op.drop_index("ix_error_metrics_project_recorded", table_name="error_metrics")
    op.drop_table("error_metrics")
    op.drop_index("ix_project_members_project_id", table_name="project_members")
    op.drop_table("project_members")
    op.drop_table("project_usage")
    op.drop_table("project_caps")
    op.drop_index("ix_projects_status", table_name="projects")
    op.drop_index("ix_projects_owner_id", table_name="projects")
    op.drop_index("ix_projects_organization_id", table_name="projects")
    op.drop_table("projects")

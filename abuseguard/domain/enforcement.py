from __future__ import annotations

from enum import Enum


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    SEVERE = "severe"


# Ordering used when comparing or sorting severities.
SEVERITY_RANK: dict[Severity, int] = {
    Severity.WARNING: 1,
    Severity.CRITICAL: 2,
    Severity.SEVERE: 3,
}


class RecommendedAction(str, Enum):
    NONE = "none"
    WARNING = "warning"
    INVESTIGATE = "investigate"
    SUSPEND = "suspend"


class DetectorKind(str, Enum):
    ERROR_RATE = "error_rate"
    SPIKE = "spike"
    PATTERN = "pattern"


class PatternType(str, Enum):
    SQL_INJECTION = "sql_injection"
    AUTH_BRUTE_FORCE = "auth_brute_force"
    RAPID_KEY_CREATION = "rapid_key_creation"


class SuspensionReason(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    ERROR_RATE = "error_rate"
    SPIKE = "spike"
    PATTERN = "pattern"
    MANUAL = "manual"


# Suspension reason recorded when a detector recommends suspending a project.
DETECTOR_SUSPENSION_REASON: dict[DetectorKind, SuspensionReason] = {
    DetectorKind.ERROR_RATE: SuspensionReason.ERROR_RATE,
    DetectorKind.SPIKE: SuspensionReason.SPIKE,
    DetectorKind.PATTERN: SuspensionReason.PATTERN,
}


class OverrideAction(str, Enum):
    UNSUSPEND = "unsuspend"
    INCREASE_CAPS = "increase_caps"
    BOTH = "both"


class ActorType(str, Enum):
    SYSTEM = "system"
    USER = "user"


class IdentifierType(str, Enum):
    ORG = "org"
    IP = "ip"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD = "dead"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    IN_APP = "in_app"


class NotificationType(str, Enum):
    PROJECT_SUSPENDED = "project_suspended"
    OVERRIDE_APPLIED = "override_applied"
    DETECTION_WARNING = "detection_warning"


class ProjectEnvironment(str, Enum):
    PROD = "prod"
    STAGING = "staging"
    DEV = "dev"


# Audit actions written by enforcement flows.
AUDIT_PROJECT_SUSPENDED = "project.suspended"
AUDIT_PROJECT_UNSUSPENDED = "project.unsuspended"
AUDIT_OVERRIDE_APPLIED = "override.applied"
AUDIT_DETECTION_FLAGGED = "detection.flagged"
AUDIT_SCAN_COMPLETED = "background_job.completed"
AUDIT_AUTH_FAILURE = "auth.access.failure"
AUDIT_AUTH_FORBIDDEN = "rbac.forbidden"
AUDIT_RATE_LIMITED = "security.rate_limited"
AUDIT_CAPS_INCREASED = "quota.caps_increased"
AUDIT_PROJECT_PROVISIONED = "project.provisioned"
AUDIT_PROJECT_ARCHIVED = "project.archived"

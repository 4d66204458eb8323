from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROJECT_SUSPENDED = "project_suspended"
    DETECTION_FAILURE = "detection_failure"
    NOTIFICATION_DELIVERY = "notification_delivery"
    INTERNAL = "internal"


class AbuseGuardError(Exception):
    """Base error for AbuseGuard.

    Every error carries a discriminant ``kind``, a stable ``code`` and an HTTP
    ``status_code`` so callers never branch on message text.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    @property
    def retry_after_s(self) -> int | None:
        return None

    def to_detail(self) -> dict[str, Any]:
        # Shape used by the API envelope and audit metadata.
        detail: dict[str, Any] = {"code": self.code, "message": self.message, **self.details}
        if self.retry_after_s is not None:
            detail["retry_after_s"] = self.retry_after_s
        return detail


class ValidationError(AbuseGuardError):
    """Malformed input; always client-fixable."""

    kind = ErrorKind.VALIDATION
    code = "INVALID_REQUEST"
    status_code = 400


class AuthenticationError(AbuseGuardError):
    """Missing or invalid credential."""

    kind = ErrorKind.AUTHENTICATION
    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class AuthorizationError(AbuseGuardError):
    """Authenticated actor lacks the required role."""

    kind = ErrorKind.AUTHORIZATION
    code = "AUTH_FORBIDDEN"
    status_code = 403

    def __init__(self, message: str, *, actor_id: str | None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.actor_id = actor_id


class NotFoundError(AbuseGuardError):
    """Referenced entity does not exist."""

    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"
    status_code = 404


class RateLimitedError(AbuseGuardError):
    """Identifier exceeded its window quota."""

    kind = ErrorKind.RATE_LIMITED
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        reset_at: datetime,
        retry_after_seconds: int,
        limit: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            details={**(details or {}), "reset_at": reset_at.isoformat(), "limit": limit},
        )
        self.reset_at = reset_at
        self.limit = limit
        self._retry_after_s = max(1, int(retry_after_seconds))

    @property
    def retry_after_s(self) -> int | None:
        return self._retry_after_s


class QuotaExceededError(AbuseGuardError):
    """Requested usage would exceed the project's cap."""

    kind = ErrorKind.QUOTA_EXCEEDED
    code = "QUOTA_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, *, project_id: str, resource: str, limit: int, used: int) -> None:
        super().__init__(
            message,
            details={
                "project_id": project_id,
                "resource": resource,
                "limit": limit,
                "used": used,
                "remaining": max(0, limit - used),
            },
        )
        self.project_id = project_id
        self.resource = resource
        self.limit = limit
        self.used = used


class ProjectSuspendedError(AbuseGuardError):
    """Project is not ACTIVE; operations are blocked until an override."""

    kind = ErrorKind.PROJECT_SUSPENDED
    code = "PROJECT_SUSPENDED"
    status_code = 423

    def __init__(self, message: str, *, project_id: str, status: str) -> None:
        super().__init__(message, details={"project_id": project_id, "status": status})
        self.project_id = project_id
        self.status = status


class DetectionFailure(AbuseGuardError):
    """A detector could not evaluate one project."""

    kind = ErrorKind.DETECTION_FAILURE
    code = "DETECTION_FAILURE"
    status_code = 500

    def __init__(self, message: str, *, project_id: str, detector: str) -> None:
        super().__init__(message, details={"project_id": project_id, "detector": detector})
        self.project_id = project_id
        self.detector = detector


class NotificationDeliveryFailure(AbuseGuardError):
    """A channel could not deliver a notification."""

    kind = ErrorKind.NOTIFICATION_DELIVERY
    code = "NOTIFICATION_DELIVERY_FAILED"
    status_code = 502

    def __init__(self, message: str, *, channel: str, permanent: bool = False) -> None:
        super().__init__(message, details={"channel": channel, "permanent": permanent})
        self.channel = channel
        self.permanent = permanent


class InternalError(AbuseGuardError):
    """Persistence or transaction failure; the operation was rolled back."""

    kind = ErrorKind.INTERNAL
    code = "INTERNAL_ERROR"
    status_code = 500

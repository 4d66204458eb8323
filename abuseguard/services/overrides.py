from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select

from abuseguard.core.config import get_settings
from abuseguard.core.errors import (
    AbuseGuardError,
    AuthorizationError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from abuseguard.domain.enforcement import (
    AUDIT_AUTH_FORBIDDEN,
    AUDIT_OVERRIDE_APPLIED,
    AUDIT_RATE_LIMITED,
    ActorType,
    IdentifierType,
    OverrideAction,
    ProjectStatus,
)
from abuseguard.domain.models import OverrideRecord
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.projects import get_project, snapshot_state
from abuseguard.services.audit import record_entry
from abuseguard.services.auth.api_keys import OVERRIDE_ROLES
from abuseguard.services.notifications import NotificationManager
from abuseguard.services.quota import QuotaManager, validate_cap_values
from abuseguard.services.rate_limit import RateLimiter
from abuseguard.services.suspension import SuspensionManager


logger = logging.getLogger(__name__)

_CAP_ACTIONS = {OverrideAction.INCREASE_CAPS, OverrideAction.BOTH}
_UNSUSPEND_ACTIONS = {OverrideAction.UNSUSPEND, OverrideAction.BOTH}


class OverrideRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    action: OverrideAction
    reason: str
    notes: str | None = None
    new_caps: dict[str, int] | None = Field(default=None, alias="newCaps")

    @field_validator("reason")
    @classmethod
    def _check_reason(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("reason is required")
        max_length = get_settings().override_reason_max_length
        if len(stripped) > max_length:
            raise ValueError(f"reason must be at most {max_length} characters")
        return stripped

    @field_validator("notes")
    @classmethod
    def _check_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        max_length = get_settings().override_notes_max_length
        if len(value) > max_length:
            raise ValueError(f"notes must be at most {max_length} characters")
        return value.strip() or None

    @model_validator(mode="after")
    def _check_caps(self) -> "OverrideRequest":
        if self.action in _CAP_ACTIONS and not self.new_caps:
            raise ValueError(f"new_caps is required for action {self.action.value}")
        if self.action not in _CAP_ACTIONS and self.new_caps is not None:
            raise ValueError(f"new_caps is not accepted for action {self.action.value}")
        if self.new_caps:
            try:
                self.new_caps = validate_cap_values(self.new_caps)
            except ValidationError as exc:
                raise ValueError(exc.message) from exc
        return self


def parse_override_request(payload: OverrideRequest | Mapping[str, Any] | None) -> OverrideRequest:
    # Raw bodies are validated only after the caller passed the role gate and rate limit.
    if isinstance(payload, OverrideRequest):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")
    try:
        return OverrideRequest.model_validate(dict(payload))
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid override request",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


@dataclass(frozen=True)
class Operator:
    id: str
    role: str


@dataclass(frozen=True)
class OverrideResult:
    record: OverrideRecord
    previous_state: dict[str, Any]
    current_state: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "override": serialize_override(self.record),
            "previous_state": self.previous_state,
            "current_state": self.current_state,
        }


def serialize_override(record: OverrideRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "project_id": record.project_id,
        "action": record.action,
        "reason": record.reason,
        "notes": record.notes,
        "performed_by": record.performed_by,
        "performed_at": record.performed_at.isoformat() if record.performed_at else None,
        "ip_address": record.ip_address,
        "previous_state": record.previous_state,
        "new_state": record.new_state,
    }


def clamp_history_limit(limit: int | None) -> int:
    settings = get_settings()
    if limit is None:
        return settings.override_history_default_limit
    return max(1, min(int(limit), settings.override_history_max_limit))


class OverrideManager:
    """Audited, rate-limited manual reversal of enforcement.

    The state change, the override record and the audit entry commit together
    or not at all. The whole operation is bounded by ``override_timeout_s`` and
    is never retried.

    Raw bodies are validated after the role gate and the rate limiter, so a
    forbidden caller is audited and a malformed attempt still counts.
    """

    def __init__(
        self,
        database: Database,
        *,
        rate_limiter: RateLimiter | None = None,
        suspension: SuspensionManager | None = None,
        quota: QuotaManager | None = None,
        notifications: NotificationManager | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._database = database
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))
        self._rate_limiter = rate_limiter or RateLimiter(database, time_provider=self._time_provider)
        self._quota = quota or QuotaManager(database, time_provider=self._time_provider)
        self._notifications = notifications
        self._suspension = suspension or SuspensionManager(
            database,
            notifications=notifications,
            quota=self._quota,
            time_provider=self._time_provider,
        )

    async def perform_override(
        self,
        project_id: str,
        payload: OverrideRequest | Mapping[str, Any] | None,
        operator: Operator,
        *,
        client_ip: str | None = None,
    ) -> OverrideResult:
        settings = get_settings()
        if operator.role not in OVERRIDE_ROLES:
            await record_entry(
                database=self._database,
                actor_id=operator.id,
                actor_type=ActorType.USER,
                action=AUDIT_AUTH_FORBIDDEN,
                target_type="project",
                target_id=project_id,
                project_id=project_id,
                metadata={"operation": "override", "role": operator.role, "required": list(OVERRIDE_ROLES)},
                ip_address=client_ip,
                best_effort=True,
            )
            raise AuthorizationError("Operator or admin role required for overrides", actor_id=operator.id)

        try:
            await self._rate_limiter.enforce(
                IdentifierType.ORG,
                operator.id,
                limit=settings.override_rate_limit,
                window_s=settings.override_rate_window_s,
            )
        except RateLimitedError as exc:
            await record_entry(
                database=self._database,
                actor_id=operator.id,
                actor_type=ActorType.USER,
                action=AUDIT_RATE_LIMITED,
                target_type="project",
                target_id=project_id,
                project_id=project_id,
                metadata={"operation": "override", "retry_after_s": exc.retry_after_s},
                ip_address=client_ip,
                best_effort=True,
            )
            raise

        request = parse_override_request(payload)

        try:
            result = await asyncio.wait_for(
                self._apply(project_id, request, operator, client_ip),
                timeout=settings.override_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "override_timeout project_id=%s operator_id=%s timeout_s=%s",
                project_id,
                operator.id,
                settings.override_timeout_s,
            )
            raise InternalError("Override timed out and was not applied") from exc
        except AbuseGuardError:
            raise
        except Exception as exc:
            logger.exception("override_failed project_id=%s operator_id=%s", project_id, operator.id)
            raise InternalError("Override failed and was rolled back") from exc

        logger.info(
            "override_applied project_id=%s operator_id=%s action=%s override_id=%s",
            project_id,
            operator.id,
            request.action.value,
            result.record.id,
        )
        await self._notify(result)
        return result

    async def _apply(
        self,
        project_id: str,
        request: OverrideRequest,
        operator: Operator,
        client_ip: str | None,
    ) -> OverrideResult:
        now = self._time_provider()
        async with self._database.session() as session:
            async with session.begin():
                project = await get_project(session, project_id, for_update=True)
                if project is None or project.deleted_at is not None:
                    raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
                if project.status == ProjectStatus.ARCHIVED.value:
                    raise ValidationError("Archived projects cannot be overridden", details={"project_id": project_id})
                previous_state = await snapshot_state(session, project)

                if request.action in _UNSUSPEND_ACTIONS:
                    await self._suspension.unsuspend(session, project_id, resolved_by=operator.id)
                if request.action in _CAP_ACTIONS:
                    await self._quota.increase_caps(session, project_id, request.new_caps or {})

                current_state = await snapshot_state(session, project)
                record = OverrideRecord(
                    id=uuid4().hex,
                    project_id=project_id,
                    action=request.action.value,
                    reason=request.reason,
                    notes=request.notes,
                    performed_by=operator.id,
                    performed_at=now,
                    ip_address=client_ip,
                    previous_state=previous_state,
                    new_state=current_state,
                )
                session.add(record)
                await session.flush()
                await record_entry(
                    session=session,
                    actor_id=operator.id,
                    actor_type=ActorType.USER,
                    action=AUDIT_OVERRIDE_APPLIED,
                    target_type="project",
                    target_id=project_id,
                    project_id=project_id,
                    metadata={
                        "override_id": record.id,
                        "action": request.action.value,
                        "reason": request.reason,
                        "notes": request.notes,
                        "previous_state": previous_state,
                        "new_state": current_state,
                    },
                    ip_address=client_ip,
                    created_at=now,
                )
        return OverrideResult(record=record, previous_state=previous_state, current_state=current_state)

    async def _notify(self, result: OverrideResult) -> None:
        if self._notifications is None:
            return
        record = result.record
        try:
            await self._notifications.send_override_notice(
                record.project_id,
                action=record.action,
                reason=record.reason,
                performed_at=record.performed_at,
                previous_state=result.previous_state,
                new_state=result.current_state,
            )
        except Exception as exc:  # noqa: BLE001 - the override is already committed.
            logger.warning("override_notification_failed project_id=%s", record.project_id, exc_info=exc)

    async def list_overrides(self, project_id: str, *, limit: int | None = None) -> list[OverrideRecord]:
        async with self._database.session() as session:
            if await get_project(session, project_id) is None:
                raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
            result = await session.execute(
                select(OverrideRecord)
                .where(OverrideRecord.project_id == project_id)
                .order_by(OverrideRecord.performed_at.desc(), OverrideRecord.id.desc())
                .limit(clamp_history_limit(limit))
            )
            return list(result.scalars().all())

    async def override_statistics(self) -> dict[str, Any]:
        since = self._time_provider() - timedelta(days=7)
        async with self._database.session() as session:
            total = int((await session.execute(select(func.count(OverrideRecord.id)))).scalar_one())
            by_action_rows = await session.execute(
                select(OverrideRecord.action, func.count(OverrideRecord.id)).group_by(OverrideRecord.action)
            )
            recent = int(
                (
                    await session.execute(
                        select(func.count(OverrideRecord.id)).where(OverrideRecord.performed_at >= since)
                    )
                ).scalar_one()
            )
        by_action = {action.value: 0 for action in OverrideAction}
        for action, count in by_action_rows.all():
            by_action[str(action)] = int(count)
        return {"total": total, "by_action": by_action, "last_7_days": recent}

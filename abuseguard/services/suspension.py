from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.core.errors import AbuseGuardError, NotFoundError, ValidationError
from abuseguard.domain.enforcement import (
    AUDIT_DETECTION_FLAGGED,
    AUDIT_PROJECT_SUSPENDED,
    AUDIT_PROJECT_UNSUSPENDED,
    DETECTOR_SUSPENSION_REASON,
    ActorType,
    ProjectEnvironment,
    ProjectStatus,
    RecommendedAction,
    SuspensionReason,
)
from abuseguard.domain.models import Project, Suspension
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.projects import get_open_suspension, get_project, load_caps
from abuseguard.services.audit import SYSTEM_ACTOR_ID, record_entry
from abuseguard.services.detection.engine import DetectionResult
from abuseguard.services.notifications import NotificationManager
from abuseguard.services.quota import QuotaManager


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SuspensionOutcome:
    project_id: str
    created: bool
    record: Suspension | None
    status: str


@dataclass(frozen=True)
class EnforcementStatus:
    project_id: str
    status: str
    suspended_at: datetime | None
    suspension_reason: str | None
    caps: dict[str, int]
    open_suspension: Suspension | None

    def to_dict(self) -> dict[str, Any]:
        suspension = self.open_suspension
        return {
            "project_id": self.project_id,
            "status": self.status,
            "suspended_at": self.suspended_at.isoformat() if self.suspended_at else None,
            "suspension_reason": self.suspension_reason,
            "caps": self.caps,
            "open_suspension": serialize_suspension(suspension) if suspension else None,
        }


@dataclass
class DetectionHandlingSummary:
    suspended: list[str] = field(default_factory=list)
    warned: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, int]:
        return {"suspended": len(self.suspended), "warned": len(self.warned), "failed": len(self.failed)}


def serialize_suspension(record: Suspension) -> dict[str, Any]:
    return {
        "id": record.id,
        "project_id": record.project_id,
        "reason": record.reason,
        "triggered_by": record.triggered_by,
        "details": record.details_json or {},
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "resolved_at": record.resolved_at.isoformat() if record.resolved_at else None,
        "resolved_by": record.resolved_by,
    }


class SuspensionManager:
    """Owns ACTIVE <-> SUSPENDED transitions.

    Every transition happens under a row lock on the project, opens or closes
    exactly one suspension record, and writes a SYSTEM audit entry in the same
    transaction. Notifications go out after commit and never undo a transition.
    """

    def __init__(
        self,
        database: Database,
        *,
        notifications: NotificationManager | None = None,
        quota: QuotaManager | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._database = database
        self._notifications = notifications
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))
        self._quota = quota or QuotaManager(database, time_provider=self._time_provider)

    async def suspend(
        self,
        project_id: str,
        reason: SuspensionReason,
        *,
        triggered_by: str,
        details: dict[str, Any] | None = None,
        actor_type: ActorType = ActorType.SYSTEM,
        ip_address: str | None = None,
    ) -> SuspensionOutcome:
        now = self._time_provider()
        try:
            async with self._database.session() as session:
                async with session.begin():
                    project = await get_project(session, project_id, for_update=True)
                    if project is None:
                        raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
                    if project.status == ProjectStatus.ARCHIVED.value or project.deleted_at is not None:
                        raise ValidationError(
                            "Archived projects cannot be suspended",
                            details={"project_id": project_id},
                        )
                    if project.status == ProjectStatus.SUSPENDED.value:
                        existing = await get_open_suspension(session, project_id)
                        return SuspensionOutcome(
                            project_id=project_id,
                            created=False,
                            record=existing,
                            status=project.status,
                        )

                    record = Suspension(
                        id=uuid4().hex,
                        project_id=project_id,
                        reason=reason.value,
                        triggered_by=triggered_by,
                        details_json=details or {},
                        created_at=now,
                    )
                    session.add(record)
                    project.status = ProjectStatus.SUSPENDED.value
                    project.suspended_at = now
                    project.suspension_reason = reason.value
                    project.updated_at = now
                    await session.flush()
                    await record_entry(
                        session=session,
                        actor_id=SYSTEM_ACTOR_ID if actor_type == ActorType.SYSTEM else triggered_by,
                        actor_type=actor_type,
                        action=AUDIT_PROJECT_SUSPENDED,
                        target_type="project",
                        target_id=project_id,
                        project_id=project_id,
                        metadata={
                            "reason": reason.value,
                            "triggered_by": triggered_by,
                            "suspension_id": record.id,
                            "details": details or {},
                        },
                        ip_address=ip_address,
                        created_at=now,
                    )
        except IntegrityError:
            # A concurrent suspension already opened the record for this project.
            async with self._database.session() as session:
                existing = await get_open_suspension(session, project_id)
            return SuspensionOutcome(
                project_id=project_id,
                created=False,
                record=existing,
                status=ProjectStatus.SUSPENDED.value,
            )

        logger.info(
            "project_suspended project_id=%s reason=%s triggered_by=%s",
            project_id,
            reason.value,
            triggered_by,
        )
        await self._notify_suspension(project_id, reason, now)
        return SuspensionOutcome(
            project_id=project_id,
            created=True,
            record=record,
            status=ProjectStatus.SUSPENDED.value,
        )

    async def _notify_suspension(self, project_id: str, reason: SuspensionReason, suspended_at: datetime) -> None:
        if self._notifications is None:
            return
        try:
            await self._notifications.send_suspension_notice(project_id, reason.value, suspended_at)
        except Exception as exc:  # noqa: BLE001 - notification failures must not undo a committed suspension.
            logger.warning("suspension_notification_failed project_id=%s", project_id, exc_info=exc)

    async def unsuspend(self, session: AsyncSession, project_id: str, *, resolved_by: str) -> bool:
        # Runs inside the caller's transaction; returns False when there was nothing to lift.
        project = await get_project(session, project_id, for_update=True)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
        if project.status != ProjectStatus.SUSPENDED.value:
            return False
        now = self._time_provider()
        previous_reason = project.suspension_reason
        open_record = await get_open_suspension(session, project_id)
        if open_record is not None:
            open_record.resolved_at = now
            open_record.resolved_by = resolved_by
        project.status = ProjectStatus.ACTIVE.value
        project.suspended_at = None
        project.suspension_reason = None
        project.updated_at = now
        await session.flush()
        await record_entry(
            session=session,
            actor_id=resolved_by,
            actor_type=ActorType.USER,
            action=AUDIT_PROJECT_UNSUSPENDED,
            target_type="project",
            target_id=project_id,
            project_id=project_id,
            metadata={
                "previous_reason": previous_reason,
                "suspension_id": open_record.id if open_record else None,
            },
            created_at=now,
        )
        logger.info("project_unsuspended project_id=%s resolved_by=%s", project_id, resolved_by)
        return True

    async def handle_detections(self, results: Sequence[DetectionResult]) -> DetectionHandlingSummary:
        """Apply the recommended action of every actionable detection.

        SUSPEND results suspend the project; WARNING and INVESTIGATE results are
        audited and warned about. One failing project never stops the rest.
        """
        summary = DetectionHandlingSummary()
        for result in results:
            if not result.actionable:
                continue
            try:
                await record_entry(
                    database=self._database,
                    actor_id=SYSTEM_ACTOR_ID,
                    actor_type=ActorType.SYSTEM,
                    action=AUDIT_DETECTION_FLAGGED,
                    target_type="project",
                    target_id=result.project_id,
                    project_id=result.project_id,
                    metadata=result.to_dict(),
                    created_at=result.detected_at,
                    best_effort=True,
                )
                if result.recommended_action == RecommendedAction.SUSPEND:
                    outcome = await self.suspend(
                        result.project_id,
                        DETECTOR_SUSPENSION_REASON[result.detector],
                        triggered_by=f"detector:{result.detector.value}",
                        details=result.to_dict(),
                    )
                    if outcome.created:
                        summary.suspended.append(result.project_id)
                else:
                    await self._warn(result)
                    summary.warned.append(result.project_id)
            except AbuseGuardError as exc:
                logger.warning(
                    "detection_action_skipped project_id=%s detector=%s code=%s",
                    result.project_id,
                    result.detector.value,
                    exc.code,
                )
                summary.failed.append(result.project_id)
            except Exception:  # noqa: BLE001 - keep processing the rest of the batch.
                logger.exception(
                    "detection_action_failed project_id=%s detector=%s",
                    result.project_id,
                    result.detector.value,
                )
                summary.failed.append(result.project_id)
        return summary

    async def _warn(self, result: DetectionResult) -> None:
        if self._notifications is None:
            return
        try:
            await self._notifications.send_detection_warning(
                result.project_id,
                detector=result.detector.value,
                severity=result.severity.value if result.severity else "none",
                details=result.details,
                detected_at=result.detected_at,
            )
        except Exception as exc:  # noqa: BLE001 - warnings are best-effort.
            logger.warning("detection_warning_failed project_id=%s", result.project_id, exc_info=exc)

    async def enforce_quota_abuse(self) -> list[SuspensionOutcome]:
        # Suspend projects that keep hammering hard caps after being denied.
        allow_non_prod = get_settings().auto_suspend_non_prod
        outcomes: list[SuspensionOutcome] = []
        for candidate in await self._quota.find_abusive_projects():
            if candidate.environment != ProjectEnvironment.PROD.value and not allow_non_prod:
                logger.info(
                    "quota_abuse_skipped_non_prod project_id=%s environment=%s denied=%s",
                    candidate.project_id,
                    candidate.environment,
                    candidate.denied,
                )
                continue
            try:
                outcome = await self.suspend(
                    candidate.project_id,
                    SuspensionReason.QUOTA_EXCEEDED,
                    triggered_by="quota_enforcement",
                    details={"resource": candidate.resource, "denied": candidate.denied},
                )
            except AbuseGuardError as exc:
                logger.warning(
                    "quota_abuse_suspend_skipped project_id=%s code=%s",
                    candidate.project_id,
                    exc.code,
                )
                continue
            outcomes.append(outcome)
        return outcomes

    async def get_status(self, project_id: str) -> EnforcementStatus:
        async with self._database.session() as session:
            project = await get_project(session, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
            return EnforcementStatus(
                project_id=project.id,
                status=project.status,
                suspended_at=project.suspended_at,
                suspension_reason=project.suspension_reason,
                caps=await load_caps(session, project_id),
                open_suspension=await get_open_suspension(session, project_id),
            )

    async def list_open_suspensions(self, *, limit: int = 100) -> list[Suspension]:
        async with self._database.session() as session:
            result = await session.execute(
                select(Suspension)
                .join(Project, Project.id == Suspension.project_id)
                .where(Suspension.resolved_at.is_(None))
                .order_by(Suspension.created_at.desc())
                .limit(max(1, int(limit)))
            )
            return list(result.scalars().all())

    async def list_history(self, project_id: str, *, limit: int = 50) -> list[Suspension]:
        async with self._database.session() as session:
            result = await session.execute(
                select(Suspension)
                .where(Suspension.project_id == project_id)
                .order_by(Suspension.created_at.desc())
                .limit(max(1, int(limit)))
            )
            return list(result.scalars().all())

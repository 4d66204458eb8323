from __future__ import annotations

import pytest
from sqlalchemy import select

from abuseguard.core.errors import NotFoundError, QuotaExceededError, ValidationError
from abuseguard.domain.enforcement import (
    AUDIT_DETECTION_FLAGGED,
    AUDIT_PROJECT_SUSPENDED,
    DetectorKind,
    ProjectEnvironment,
    ProjectStatus,
    RecommendedAction,
    Severity,
    SuspensionReason,
)
from abuseguard.domain.models import AuditLog
from abuseguard.services.detection.engine import DetectionResult
from abuseguard.services.notifications import NotificationManager
from abuseguard.services.projects import archive_project
from abuseguard.services.quota import QuotaManager
from abuseguard.services.suspension import SuspensionManager
from abuseguard.tests.utils.factories import FailingChannel, RecordingChannel, count_audit, seed_project


def _manager(database, clock, *channels) -> SuspensionManager:
    notifications = NotificationManager(database, channels=list(channels) or [RecordingChannel()], time_provider=clock)
    return SuspensionManager(database, notifications=notifications, time_provider=clock)


def _detection(project_id: str, action: RecommendedAction, clock) -> DetectionResult:
    return DetectionResult(
        project_id=project_id,
        detector=DetectorKind.ERROR_RATE,
        detected=True,
        metric_value=95.0,
        severity=Severity.SEVERE,
        recommended_action=action,
        detected_at=clock.now,
        details="High error rate detected",
    )


@pytest.mark.asyncio
async def test_suspend_transitions_records_and_audits(database, clock) -> None:
    project = await seed_project(database)
    channel = RecordingChannel()
    manager = _manager(database, clock, channel)

    outcome = await manager.suspend(
        project.id,
        SuspensionReason.SPIKE,
        triggered_by="detector:spike",
        details={"multiplier": 6.0},
    )

    assert outcome.created is True
    assert outcome.record is not None
    status = await manager.get_status(project.id)
    assert status.status == ProjectStatus.SUSPENDED.value
    assert status.suspended_at == clock.now
    assert status.open_suspension.id == outcome.record.id
    assert await count_audit(database, AUDIT_PROJECT_SUSPENDED, project_id=project.id) == 1

    async with database.session() as session:
        entry = (
            await session.execute(select(AuditLog).where(AuditLog.action == AUDIT_PROJECT_SUSPENDED))
        ).scalar_one()
    assert entry.actor_type == "system"
    assert entry.metadata_json["reason"] == "spike"

    addresses = sorted(address for address, _ in channel.sent)
    assert addresses == ["user-admin", "user-owner"]
    assert channel.sent[0][1].subject == "Project suspended: Storefront"


@pytest.mark.asyncio
async def test_suspending_twice_is_idempotent(database, clock) -> None:
    project = await seed_project(database)
    channel = RecordingChannel()
    manager = _manager(database, clock, channel)
    first = await manager.suspend(project.id, SuspensionReason.SPIKE, triggered_by="detector:spike")
    clock.advance(minutes=5)
    second = await manager.suspend(project.id, SuspensionReason.ERROR_RATE, triggered_by="detector:error_rate")

    assert second.created is False
    assert second.record.id == first.record.id
    assert len(await manager.list_history(project.id)) == 1
    assert await count_audit(database, AUDIT_PROJECT_SUSPENDED, project_id=project.id) == 1
    assert len(channel.sent) == 2
    status = await manager.get_status(project.id)
    assert status.suspension_reason == "spike"


@pytest.mark.asyncio
async def test_suspend_rejects_missing_and_archived_projects(database, clock) -> None:
    manager = _manager(database, clock)
    with pytest.raises(NotFoundError):
        await manager.suspend("proj-missing", SuspensionReason.MANUAL, triggered_by="user-ops")

    project = await seed_project(database)
    await archive_project(database, project.id, actor_id="user-ops")
    with pytest.raises(ValidationError):
        await manager.suspend(project.id, SuspensionReason.MANUAL, triggered_by="user-ops")


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_suspension(database, clock) -> None:
    project = await seed_project(database)
    manager = _manager(database, clock, FailingChannel())

    outcome = await manager.suspend(project.id, SuspensionReason.PATTERN, triggered_by="detector:pattern")

    assert outcome.created is True
    assert (await manager.get_status(project.id)).status == ProjectStatus.SUSPENDED.value


@pytest.mark.asyncio
async def test_handle_detections_suspends_or_warns(database, clock) -> None:
    to_suspend = await seed_project(database)
    to_warn = await seed_project(database)
    channel = RecordingChannel()
    manager = _manager(database, clock, channel)

    summary = await manager.handle_detections(
        [
            _detection(to_suspend.id, RecommendedAction.SUSPEND, clock),
            _detection(to_warn.id, RecommendedAction.INVESTIGATE, clock),
            _detection("proj-missing", RecommendedAction.SUSPEND, clock),
        ]
    )

    assert summary.suspended == [to_suspend.id]
    assert summary.warned == [to_warn.id]
    assert summary.failed == ["proj-missing"]
    assert (await manager.get_status(to_suspend.id)).suspension_reason == "error_rate"
    assert (await manager.get_status(to_warn.id)).status == ProjectStatus.ACTIVE.value
    assert await count_audit(database, AUDIT_DETECTION_FLAGGED) == 3
    subjects = {message.subject for _, message in channel.sent}
    assert "Abuse warning for project Storefront" in subjects


@pytest.mark.asyncio
async def test_quota_abuse_suspends_prod_projects_only(database, clock) -> None:
    prod = await seed_project(database, caps={"storage": 0})
    dev = await seed_project(database, caps={"storage": 0}, environment=ProjectEnvironment.DEV)
    quota = QuotaManager(database, time_provider=clock)
    for project in (prod, dev):
        for _ in range(3):
            with pytest.raises(QuotaExceededError):
                await quota.enforce_cap(project.id, "storage")

    class _LowThresholdQuota(QuotaManager):
        async def find_abusive_projects(self, *, threshold=None):
            return await super().find_abusive_projects(threshold=3)

    manager = SuspensionManager(
        database,
        notifications=NotificationManager(database, channels=[RecordingChannel()], time_provider=clock),
        quota=_LowThresholdQuota(database, time_provider=clock),
        time_provider=clock,
    )
    outcomes = await manager.enforce_quota_abuse()

    assert [outcome.project_id for outcome in outcomes] == [prod.id]
    assert (await manager.get_status(prod.id)).suspension_reason == "quota_exceeded"
    assert (await manager.get_status(dev.id)).status == ProjectStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_open_suspensions_are_listed(database, clock) -> None:
    first = await seed_project(database)
    second = await seed_project(database)
    manager = _manager(database, clock)
    await manager.suspend(first.id, SuspensionReason.MANUAL, triggered_by="user-ops")
    clock.advance(minutes=1)
    await manager.suspend(second.id, SuspensionReason.SPIKE, triggered_by="detector:spike")

    open_records = await manager.list_open_suspensions()
    assert [record.project_id for record in open_records] == [second.id, first.id]

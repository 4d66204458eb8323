from __future__ import annotations

import pytest
from sqlalchemy import func, select

from abuseguard.core.config import get_settings
from abuseguard.core.errors import (
    AuthorizationError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from abuseguard.domain.enforcement import (
    AUDIT_AUTH_FORBIDDEN,
    AUDIT_OVERRIDE_APPLIED,
    AUDIT_PROJECT_UNSUSPENDED,
    AUDIT_RATE_LIMITED,
    OverrideAction,
    ProjectStatus,
)
from abuseguard.domain.models import OverrideRecord, Suspension
from abuseguard.services.notifications import NotificationManager
from abuseguard.services.overrides import Operator, OverrideManager, OverrideRequest
from abuseguard.services.rate_limit import RateLimiter
from abuseguard.tests.utils.factories import RecordingChannel, count_audit, seed_project, suspend_directly


OPERATOR = Operator(id="user-ops", role="operator")


def _manager(database, clock, channel: RecordingChannel | None = None) -> OverrideManager:
    notifications = NotificationManager(database, channels=[channel or RecordingChannel()], time_provider=clock)
    return OverrideManager(
        database,
        rate_limiter=RateLimiter(database, time_provider=clock),
        notifications=notifications,
        time_provider=clock,
    )


async def _override_count(database) -> int:
    async with database.session() as session:
        return int((await session.execute(select(func.count(OverrideRecord.id)))).scalar_one())


@pytest.mark.asyncio
async def test_unsuspend_restores_project_and_records_everything(database, clock) -> None:
    project = await seed_project(database)
    await suspend_directly(database, project.id, clock)
    clock.advance(hours=1)
    channel = RecordingChannel()
    manager = _manager(database, clock, channel)

    result = await manager.perform_override(
        project.id,
        OverrideRequest(action=OverrideAction.UNSUSPEND, reason="False positive from marketing launch"),
        OPERATOR,
        client_ip="203.0.113.5",
    )

    assert result.previous_state["status"] == ProjectStatus.SUSPENDED.value
    assert result.current_state["status"] == ProjectStatus.ACTIVE.value
    assert result.record.performed_by == "user-ops"
    assert result.record.ip_address == "203.0.113.5"

    status = await manager._suspension.get_status(project.id)
    assert status.status == ProjectStatus.ACTIVE.value
    assert status.open_suspension is None
    async with database.session() as session:
        suspension = (await session.execute(select(Suspension))).scalar_one()
    assert suspension.resolved_by == "user-ops"
    assert suspension.resolved_at == clock.now

    assert await count_audit(database, AUDIT_OVERRIDE_APPLIED, project_id=project.id) == 1
    assert await count_audit(database, AUDIT_PROJECT_UNSUSPENDED, project_id=project.id) == 1
    assert {message.subject for _, message in channel.sent} == {"Enforcement override applied: Storefront"}


@pytest.mark.asyncio
async def test_unsuspend_on_active_project_still_records_override(database, clock) -> None:
    project = await seed_project(database)
    manager = _manager(database, clock)
    result = await manager.perform_override(
        project.id,
        OverrideRequest(action=OverrideAction.UNSUSPEND, reason="Double-checking state"),
        OPERATOR,
    )
    assert result.previous_state == result.current_state
    assert await count_audit(database, AUDIT_PROJECT_UNSUSPENDED) == 0
    assert await _override_count(database) == 1


@pytest.mark.asyncio
async def test_both_lifts_suspension_and_raises_caps(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 100})
    await suspend_directly(database, project.id, clock)
    manager = _manager(database, clock)

    result = await manager.perform_override(
        project.id,
        OverrideRequest(
            action=OverrideAction.BOTH,
            reason="Customer upgraded plan",
            notes="Ticket attached to account",
            new_caps={"storage": 500},
        ),
        Operator(id="user-root", role="admin"),
    )

    assert result.previous_state["caps"]["storage"] == 100
    assert result.current_state["caps"]["storage"] == 500
    assert result.current_state["status"] == ProjectStatus.ACTIVE.value
    assert result.record.notes == "Ticket attached to account"


@pytest.mark.asyncio
async def test_cap_decrease_is_rejected_without_side_effects(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 100})
    manager = _manager(database, clock)
    with pytest.raises(ValidationError):
        await manager.perform_override(
            project.id,
            OverrideRequest(action=OverrideAction.INCREASE_CAPS, reason="Shrink", new_caps={"storage": 50}),
            OPERATOR,
        )
    assert await _override_count(database) == 0
    assert await count_audit(database, AUDIT_OVERRIDE_APPLIED) == 0


@pytest.mark.asyncio
async def test_developer_role_is_forbidden_and_audited(database, clock) -> None:
    project = await seed_project(database)
    await suspend_directly(database, project.id, clock)
    manager = _manager(database, clock)

    with pytest.raises(AuthorizationError):
        await manager.perform_override(
            project.id,
            OverrideRequest(action=OverrideAction.UNSUSPEND, reason="Let me back in"),
            Operator(id="user-dev", role="developer"),
        )

    assert await count_audit(database, AUDIT_AUTH_FORBIDDEN, project_id=project.id) == 1
    assert (await manager._suspension.get_status(project.id)).status == ProjectStatus.SUSPENDED.value


@pytest.mark.asyncio
async def test_operator_is_rate_limited(database, clock, monkeypatch) -> None:
    monkeypatch.setenv("OVERRIDE_RATE_LIMIT", "2")
    get_settings.cache_clear()
    project = await seed_project(database, caps={"storage": 100})
    manager = _manager(database, clock)

    for value in (200, 300):
        await manager.perform_override(
            project.id,
            OverrideRequest(action=OverrideAction.INCREASE_CAPS, reason="Growth", new_caps={"storage": value}),
            OPERATOR,
        )
    with pytest.raises(RateLimitedError) as excinfo:
        await manager.perform_override(
            project.id,
            OverrideRequest(action=OverrideAction.INCREASE_CAPS, reason="Growth", new_caps={"storage": 400}),
            OPERATOR,
        )

    assert excinfo.value.retry_after_s == 3600
    assert await count_audit(database, AUDIT_RATE_LIMITED) == 1
    assert await _override_count(database) == 2


@pytest.mark.asyncio
async def test_failed_audit_write_rolls_back_the_override(database, clock, monkeypatch) -> None:
    project = await seed_project(database)
    await suspend_directly(database, project.id, clock)
    manager = _manager(database, clock)

    async def _broken_audit(**kwargs):
        raise RuntimeError("audit table unavailable")

    monkeypatch.setattr("abuseguard.services.overrides.record_entry", _broken_audit)

    with pytest.raises(InternalError):
        await manager.perform_override(
            project.id,
            OverrideRequest(action=OverrideAction.UNSUSPEND, reason="Restore access"),
            OPERATOR,
        )

    status = await manager._suspension.get_status(project.id)
    assert status.status == ProjectStatus.SUSPENDED.value
    assert status.open_suspension is not None
    assert await _override_count(database) == 0
    assert await count_audit(database, AUDIT_PROJECT_UNSUSPENDED) == 0


@pytest.mark.asyncio
async def test_unknown_project_is_not_found(database, clock) -> None:
    manager = _manager(database, clock)
    with pytest.raises(NotFoundError):
        await manager.perform_override(
            "proj-missing",
            OverrideRequest(action=OverrideAction.UNSUSPEND, reason="Restore access"),
            OPERATOR,
        )
    with pytest.raises(NotFoundError):
        await manager.list_overrides("proj-missing")


@pytest.mark.asyncio
async def test_history_is_newest_first_and_clamped(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 100})
    manager = _manager(database, clock)
    for value in (200, 300, 400):
        clock.advance(minutes=1)
        await manager.perform_override(
            project.id,
            OverrideRequest(action=OverrideAction.INCREASE_CAPS, reason="Growth", new_caps={"storage": value}),
            OPERATOR,
        )

    history = await manager.list_overrides(project.id, limit=2)
    assert [record.new_state["caps"]["storage"] for record in history] == [400, 300]
    assert len(await manager.list_overrides(project.id, limit=0)) == 1

    stats = await manager.override_statistics()
    assert stats["total"] == 3
    assert stats["by_action"] == {"unsuspend": 0, "increase_caps": 3, "both": 0}
    assert stats["last_7_days"] == 3

from __future__ import annotations

import asyncio

import pytest

from abuseguard.core.errors import NotFoundError, ProjectSuspendedError, QuotaExceededError, ValidationError
from abuseguard.domain.enforcement import ProjectEnvironment
from abuseguard.services.quota import QuotaManager
from abuseguard.tests.utils.factories import seed_project, suspend_directly


@pytest.mark.asyncio
async def test_enforce_consumes_until_cap(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 3})
    quota = QuotaManager(database, time_provider=clock)

    first = await quota.enforce_cap(project.id, "storage", 2)
    assert first.used == 2
    assert first.remaining == 1
    await quota.enforce_cap(project.id, "storage")

    with pytest.raises(QuotaExceededError) as excinfo:
        await quota.enforce_cap(project.id, "storage")
    assert excinfo.value.used == 3
    assert excinfo.value.limit == 3

    check = await quota.check_quota(project.id, "storage")
    assert check.allowed is False
    assert check.used == 3


@pytest.mark.asyncio
async def test_oversized_request_is_rejected_without_partial_consumption(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 5})
    quota = QuotaManager(database, time_provider=clock)
    await quota.enforce_cap(project.id, "storage", 4)
    with pytest.raises(QuotaExceededError):
        await quota.enforce_cap(project.id, "storage", 2)
    check = await quota.check_quota(project.id, "storage")
    assert check.used == 4


@pytest.mark.asyncio
async def test_counters_roll_over_at_utc_midnight(database, clock) -> None:
    project = await seed_project(database, caps={"storage_uploads_per_day": 1})
    quota = QuotaManager(database, time_provider=clock)
    await quota.enforce_cap(project.id, "storage_uploads_per_day")
    with pytest.raises(QuotaExceededError):
        await quota.enforce_cap(project.id, "storage_uploads_per_day")
    clock.advance(hours=12)
    result = await quota.enforce_cap(project.id, "storage_uploads_per_day")
    assert result.used == 1


@pytest.mark.asyncio
async def test_suspended_project_is_blocked(database, clock) -> None:
    project = await seed_project(database)
    await suspend_directly(database, project.id, clock)
    quota = QuotaManager(database, time_provider=clock)
    with pytest.raises(ProjectSuspendedError):
        await quota.enforce_cap(project.id, "storage")
    check = await quota.check_quota(project.id, "storage")
    assert check.allowed is False


@pytest.mark.asyncio
async def test_unknown_resource_and_project(database, clock) -> None:
    project = await seed_project(database)
    quota = QuotaManager(database, time_provider=clock)
    with pytest.raises(ValidationError):
        await quota.enforce_cap(project.id, "bandwidth")
    with pytest.raises(NotFoundError):
        await quota.get_caps("proj-missing")


@pytest.mark.asyncio
async def test_caps_only_grow_through_increase(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 100})
    quota = QuotaManager(database, time_provider=clock)
    async with database.session() as session:
        async with session.begin():
            previous, current = await quota.increase_caps(session, project.id, {"storage": 250})
    assert previous["storage"] == 100
    assert current["storage"] == 250
    assert (await quota.get_caps(project.id))["storage"] == 250

    with pytest.raises(ValidationError):
        async with database.session() as session:
            async with session.begin():
                await quota.increase_caps(session, project.id, {"storage": 10})
    assert (await quota.get_caps(project.id))["storage"] == 250


@pytest.mark.asyncio
async def test_approaching_caps_are_reported(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 10, "realtime_connections": 10})
    quota = QuotaManager(database, time_provider=clock)
    await quota.enforce_cap(project.id, "storage", 9)
    await quota.enforce_cap(project.id, "realtime_connections", 2)
    warnings = await quota.list_approaching_caps(project.id)
    assert [warning.resource for warning in warnings] == ["storage"]
    assert warnings[0].level == "critical"


@pytest.mark.asyncio
async def test_repeated_denials_flag_abusive_projects(database, clock) -> None:
    abusive = await seed_project(database, caps={"storage": 0})
    quiet = await seed_project(database, caps={"storage": 0}, environment=ProjectEnvironment.DEV)
    quota = QuotaManager(database, time_provider=clock)
    for _ in range(3):
        with pytest.raises(QuotaExceededError):
            await quota.enforce_cap(abusive.id, "storage")
    with pytest.raises(QuotaExceededError):
        await quota.enforce_cap(quiet.id, "storage")

    flagged = await quota.find_abusive_projects(threshold=3)
    assert [item.project_id for item in flagged] == [abusive.id]
    assert flagged[0].denied == 3


@pytest.mark.asyncio
async def test_concurrent_enforcement_never_overshoots_cap(database, clock) -> None:
    project = await seed_project(database, caps={"storage": 10})
    quota = QuotaManager(database, time_provider=clock)

    outcomes = await asyncio.gather(
        *(quota.enforce_cap(project.id, "storage") for _ in range(25)),
        return_exceptions=True,
    )

    granted = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, QuotaExceededError)]
    assert len(granted) == 10
    assert len(rejected) == 15
    assert sorted(check.used for check in granted) == list(range(1, 11))
    check = await quota.check_quota(project.id, "storage")
    assert check.used == 10
    assert check.remaining == 0

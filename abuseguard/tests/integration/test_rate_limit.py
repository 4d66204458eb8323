from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from abuseguard.core.errors import InternalError, RateLimitedError
from abuseguard.domain.enforcement import IdentifierType
from abuseguard.domain.models import RateLimitWindow
from abuseguard.persistence.db import Database
from abuseguard.services.rate_limit import RateLimiter


@pytest.mark.asyncio
async def test_limit_allows_up_to_limit_then_denies(database, clock) -> None:
    limiter = RateLimiter(database, time_provider=clock)
    decisions = [
        await limiter.check(IdentifierType.ORG, "operator-1", limit=3, window_s=3600) for _ in range(4)
    ]
    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    assert decisions[2].remaining == 0
    denied = decisions[3]
    assert denied.attempt_count == 4
    # The window opened with the first attempt, so the full hour remains.
    assert denied.retry_after_s == 3600


@pytest.mark.asyncio
async def test_identifiers_are_counted_independently(database, clock) -> None:
    limiter = RateLimiter(database, time_provider=clock)
    await limiter.check(IdentifierType.ORG, "operator-1", limit=1, window_s=60)
    other = await limiter.check(IdentifierType.ORG, "operator-2", limit=1, window_s=60)
    by_ip = await limiter.check(IdentifierType.IP, "operator-1", limit=1, window_s=60)
    assert other.allowed is True
    assert by_ip.allowed is True


@pytest.mark.asyncio
async def test_new_window_resets_count_and_drops_stale_rows(database, clock) -> None:
    limiter = RateLimiter(database, time_provider=clock)
    for _ in range(2):
        await limiter.check(IdentifierType.ORG, "operator-1", limit=1, window_s=60)
    clock.advance(seconds=61)
    decision = await limiter.check(IdentifierType.ORG, "operator-1", limit=1, window_s=60)
    assert decision.allowed is True
    assert decision.attempt_count == 1
    async with database.session() as session:
        rows = (
            await session.execute(
                select(func.count(RateLimitWindow.id)).where(RateLimitWindow.identifier_value == "operator-1")
            )
        ).scalar_one()
    assert rows == 1


@pytest.mark.asyncio
async def test_enforce_raises_with_reset_hint(database, clock) -> None:
    limiter = RateLimiter(database, time_provider=clock)
    clock.advance(seconds=30)
    await limiter.enforce(IdentifierType.ORG, "operator-1", limit=1, window_s=60)
    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.enforce(IdentifierType.ORG, "operator-1", limit=1, window_s=60)
    assert excinfo.value.retry_after_s == 60
    assert excinfo.value.limit == 1


@pytest.mark.asyncio
async def test_unavailable_store_fails_closed_by_default(tmp_path, clock) -> None:
    broken = Database(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'limits.db'}")
    try:
        limiter = RateLimiter(broken, time_provider=clock)
        with pytest.raises(InternalError):
            await limiter.check(IdentifierType.ORG, "operator-1", limit=5, window_s=60)
    finally:
        await broken.dispose()


@pytest.mark.asyncio
async def test_unavailable_store_can_fail_open(tmp_path, clock) -> None:
    broken = Database(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'limits.db'}")
    try:
        limiter = RateLimiter(broken, time_provider=clock, fail_mode="open")
        decision = await limiter.check(IdentifierType.ORG, "operator-1", limit=5, window_s=60)
        assert decision.allowed is True
        assert decision.remaining == 5
    finally:
        await broken.dispose()


@pytest.mark.asyncio
async def test_window_runs_from_first_attempt_across_clock_hours(database, clock) -> None:
    limiter = RateLimiter(database, time_provider=clock)
    clock.advance(minutes=55)
    opened_at = clock.now
    for _ in range(10):
        assert (await limiter.check(IdentifierType.ORG, "operator-1", limit=10, window_s=3600)).allowed

    clock.advance(minutes=10)
    eleventh = await limiter.check(IdentifierType.ORG, "operator-1", limit=10, window_s=3600)

    assert eleventh.allowed is False
    assert eleventh.attempt_count == 11
    assert eleventh.reset_at == opened_at + timedelta(hours=1)
    assert eleventh.retry_after_s == 50 * 60

    clock.advance(minutes=50)
    reopened = await limiter.check(IdentifierType.ORG, "operator-1", limit=10, window_s=3600)
    assert reopened.allowed is True
    assert reopened.attempt_count == 1
    assert reopened.reset_at == clock.now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_concurrent_attempts_never_exceed_limit(database, clock) -> None:
    limiter = RateLimiter(database, time_provider=clock)
    decisions = await asyncio.gather(
        *(limiter.check(IdentifierType.ORG, "operator-1", limit=10, window_s=3600) for _ in range(25))
    )
    assert sum(1 for decision in decisions if decision.allowed) == 10
    assert sorted(decision.attempt_count for decision in decisions) == list(range(1, 26))

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.domain.models import AccessEvent, MetricSample


async def window_totals(
    session: AsyncSession,
    *,
    project_id: str,
    start: datetime,
    end: datetime,
) -> tuple[int, int]:
    # Sum request/error counts over (start, end] using the (project_id, recorded_at) index.
    row = (
        await session.execute(
            select(
                func.coalesce(func.sum(MetricSample.request_count), 0),
                func.coalesce(func.sum(MetricSample.error_count), 0),
            ).where(
                MetricSample.project_id == project_id,
                MetricSample.recorded_at > start,
                MetricSample.recorded_at <= end,
            )
        )
    ).one()
    return int(row[0] or 0), int(row[1] or 0)


async def count_access_events(
    session: AsyncSession,
    *,
    project_id: str,
    pattern_type: str,
    start: datetime,
    end: datetime,
) -> int:
    result = await session.execute(
        select(func.count(AccessEvent.id)).where(
            AccessEvent.project_id == project_id,
            AccessEvent.pattern_type == pattern_type,
            AccessEvent.occurred_at > start,
            AccessEvent.occurred_at <= end,
        )
    )
    return int(result.scalar_one() or 0)


async def access_event_sources(
    session: AsyncSession,
    *,
    project_id: str,
    pattern_type: str,
    start: datetime,
    end: datetime,
    limit: int,
) -> list[str]:
    # Distinct source addresses, newest first, as detection evidence.
    result = await session.execute(
        select(AccessEvent.source_ip, func.max(AccessEvent.occurred_at).label("last_seen"))
        .where(
            AccessEvent.project_id == project_id,
            AccessEvent.pattern_type == pattern_type,
            AccessEvent.occurred_at > start,
            AccessEvent.occurred_at <= end,
            AccessEvent.source_ip.is_not(None),
        )
        .group_by(AccessEvent.source_ip)
        .order_by(func.max(AccessEvent.occurred_at).desc())
        .limit(limit)
    )
    return [str(row[0]) for row in result.all()]


async def prune_samples(session: AsyncSession, *, older_than: datetime) -> int:
    result = await session.execute(delete(MetricSample).where(MetricSample.recorded_at < older_than))
    return result.rowcount or 0


async def prune_access_events(session: AsyncSession, *, older_than: datetime) -> int:
    result = await session.execute(delete(AccessEvent).where(AccessEvent.occurred_at < older_than))
    return result.rowcount or 0

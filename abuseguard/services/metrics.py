from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from abuseguard.core.config import get_settings
from abuseguard.core.errors import ValidationError
from abuseguard.domain.enforcement import PatternType
from abuseguard.domain.models import AccessEvent, MetricSample
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.metrics import (
    count_access_events,
    prune_access_events,
    prune_samples,
    window_totals,
)
from abuseguard.services.detection.pattern import detect_sql_injection


logger = logging.getLogger(__name__)

_MAX_DETAIL_LENGTH = 500


@dataclass(frozen=True)
class WindowTotals:
    requests: int
    errors: int


class MetricsStore:
    """Insert-only per-project request/error samples plus flagged access events."""

    def __init__(self, database: Database, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._database = database
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))

    async def record_sample(
        self,
        project_id: str,
        *,
        request_count: int,
        error_count: int,
        recorded_at: datetime | None = None,
    ) -> MetricSample:
        if request_count < 0 or error_count < 0:
            raise ValidationError(
                "Metric counts must be non-negative",
                details={"request_count": request_count, "error_count": error_count},
            )
        if error_count > request_count:
            raise ValidationError(
                "error_count cannot exceed request_count",
                details={"request_count": request_count, "error_count": error_count},
            )
        sample = MetricSample(
            project_id=project_id,
            request_count=int(request_count),
            error_count=int(error_count),
            recorded_at=recorded_at or self._time_provider(),
        )
        async with self._database.session() as session:
            session.add(sample)
            await session.commit()
        return sample

    async def window_totals(self, project_id: str, *, start: datetime, end: datetime) -> WindowTotals:
        async with self._database.session() as session:
            requests, errors = await window_totals(session, project_id=project_id, start=start, end=end)
        return WindowTotals(requests=requests, errors=errors)

    async def record_access_event(
        self,
        project_id: str,
        pattern_type: PatternType,
        *,
        source_ip: str | None = None,
        detail: str | None = None,
        occurred_at: datetime | None = None,
    ) -> AccessEvent:
        event = AccessEvent(
            project_id=project_id,
            pattern_type=pattern_type.value,
            source_ip=source_ip,
            detail=(detail or "")[:_MAX_DETAIL_LENGTH] or None,
            occurred_at=occurred_at or self._time_provider(),
        )
        async with self._database.session() as session:
            session.add(event)
            await session.commit()
        return event

    async def record_request_payload(
        self,
        project_id: str,
        payload: str,
        *,
        source_ip: str | None = None,
    ) -> AccessEvent | None:
        # Flag payloads matching injection signatures so the pattern detector can count them.
        match = detect_sql_injection(payload)
        if not match.matched:
            return None
        logger.info(
            "sql_injection_flagged project_id=%s confidence=%s",
            project_id,
            match.confidence,
        )
        return await self.record_access_event(
            project_id,
            PatternType.SQL_INJECTION,
            source_ip=source_ip,
            detail=f"{match.description} (confidence {match.confidence})",
        )

    async def count_access_events(
        self,
        project_id: str,
        pattern_type: PatternType,
        *,
        start: datetime,
        end: datetime,
    ) -> int:
        async with self._database.session() as session:
            return await count_access_events(
                session,
                project_id=project_id,
                pattern_type=pattern_type.value,
                start=start,
                end=end,
            )

    async def prune(self, *, retention_days: int | None = None) -> dict[str, int]:
        days = int(retention_days if retention_days is not None else get_settings().metrics_retention_days)
        cutoff = self._time_provider() - timedelta(days=days)
        async with self._database.session() as session:
            samples = await prune_samples(session, older_than=cutoff)
            events = await prune_access_events(session, older_than=cutoff)
            await session.commit()
        logger.info("metrics_pruned samples=%s access_events=%s cutoff=%s", samples, events, cutoff.isoformat())
        return {"samples": samples, "access_events": events}

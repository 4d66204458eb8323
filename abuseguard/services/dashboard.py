from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.errors import ValidationError
from abuseguard.domain.enforcement import DetectorKind, ProjectStatus
from abuseguard.domain.models import DetectionRecord, Project, ProjectUsage, RateLimitWindow, Suspension
from abuseguard.persistence.db import Database
from abuseguard.services.quota import QuotaManager, period_start


logger = logging.getLogger(__name__)

TIME_RANGES: dict[str, int] = {"24h": 24, "7d": 24 * 7, "30d": 24 * 30}
_VIOLATION_LIMIT = 50
_APPROACHING_LIMIT = 20
_RECENT_PATTERN_LIMIT = 10


def resolve_time_range(time_range: str | None) -> tuple[str, timedelta]:
    key = time_range or "24h"
    hours = TIME_RANGES.get(key)
    if hours is None:
        raise ValidationError(
            f"Unsupported time range {key}",
            details={"time_range": key, "allowed": sorted(TIME_RANGES)},
        )
    return key, timedelta(hours=hours)


async def _counts_by(session: AsyncSession, column: Any, *criteria: Any) -> dict[str, int]:
    rows = await session.execute(select(column, func.count()).where(*criteria).group_by(column))
    return {str(key): int(count) for key, count in rows.all()}


async def _suspension_stats(session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
    in_range = (Suspension.created_at >= start, Suspension.created_at <= end)
    total = int((await session.execute(select(func.count(Suspension.id)).where(*in_range))).scalar_one())
    active = int(
        (await session.execute(select(func.count(Suspension.id)).where(Suspension.resolved_at.is_(None)))).scalar_one()
    )
    return {"total": total, "active": active, "by_reason": await _counts_by(session, Suspension.reason, *in_range)}


async def _rate_limit_stats(session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
    in_range = (RateLimitWindow.window_start >= start, RateLimitWindow.window_start <= end)
    total = int((await session.execute(select(func.count(RateLimitWindow.id)).where(*in_range))).scalar_one())
    return {"windows": total, "by_type": await _counts_by(session, RateLimitWindow.identifier_type, *in_range)}


async def _cap_violations(session: AsyncSession, current_period: datetime) -> dict[str, Any]:
    # Denied enforcement attempts in the current quota period, worst first.
    rows = await session.execute(
        select(Project.id, Project.name, Project.organization_id, ProjectUsage.resource, ProjectUsage.used, ProjectUsage.denied)
        .join(Project, Project.id == ProjectUsage.project_id)
        .where(ProjectUsage.period_start == current_period, ProjectUsage.denied > 0)
        .order_by(ProjectUsage.denied.desc(), Project.id)
        .limit(_VIOLATION_LIMIT)
    )
    violations = [
        {
            "project_id": project_id,
            "project_name": name,
            "organization_id": organization_id,
            "resource": resource,
            "used": int(used),
            "denied": int(denied),
        }
        for project_id, name, organization_id, resource, used, denied in rows.all()
    ]
    return {"total": len(violations), "violations": violations}


async def _pattern_stats(session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
    in_range = (
        DetectionRecord.detector == DetectorKind.PATTERN.value,
        DetectionRecord.detected_at >= start,
        DetectionRecord.detected_at <= end,
    )
    total = int((await session.execute(select(func.count(DetectionRecord.id)).where(*in_range))).scalar_one())
    recent_rows = await session.execute(
        select(DetectionRecord)
        .where(*in_range)
        .order_by(DetectionRecord.detected_at.desc(), DetectionRecord.id.desc())
        .limit(_RECENT_PATTERN_LIMIT)
    )
    recent = [
        {
            "project_id": record.project_id,
            "pattern_type": record.subject,
            "severity": record.severity,
            "count": int(record.metric_value),
            "recommended_action": record.recommended_action,
            "detected_at": record.detected_at.isoformat(),
        }
        for record in recent_rows.scalars().all()
    ]
    return {
        "total": total,
        "by_type": await _counts_by(session, DetectionRecord.subject, *in_range),
        "by_severity": await _counts_by(session, DetectionRecord.severity, *in_range),
        "recent": recent,
    }


async def build_abuse_dashboard(
    database: Database,
    *,
    time_range: str | None = None,
    quota: QuotaManager | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> dict[str, Any]:
    """Operator summary of enforcement activity over a trailing time range.

    Covers suspensions, rate-limit windows, cap violations for the current
    quota period, projects approaching their caps and persisted pattern
    detections.
    """
    range_key, span = resolve_time_range(time_range)
    now = (time_provider or (lambda: datetime.now(timezone.utc)))()
    start = now - span
    quota = quota or QuotaManager(database, time_provider=lambda: now)
    current_period = period_start(now)

    async with database.session() as session:
        suspensions = await _suspension_stats(session, start, now)
        rate_limits = await _rate_limit_stats(session, start, now)
        cap_violations = await _cap_violations(session, current_period)
        patterns = await _pattern_stats(session, start, now)
        project_ids = (
            await session.execute(
                select(ProjectUsage.project_id)
                .join(Project, Project.id == ProjectUsage.project_id)
                .where(
                    ProjectUsage.period_start == current_period,
                    ProjectUsage.used > 0,
                    Project.status == ProjectStatus.ACTIVE.value,
                    Project.deleted_at.is_(None),
                )
                .distinct()
            )
        ).scalars().all()

    approaching: list[dict[str, Any]] = []
    for project_id in sorted(project_ids):
        for warning in await quota.list_approaching_caps(project_id):
            approaching.append({"project_id": project_id, **asdict(warning)})
    approaching.sort(key=lambda item: item["ratio"], reverse=True)

    logger.info(
        "abuse_dashboard_built time_range=%s suspensions=%s violations=%s approaching=%s",
        range_key,
        suspensions["total"],
        cap_violations["total"],
        len(approaching),
    )
    return {
        "time_range": range_key,
        "start_time": start.isoformat(),
        "end_time": now.isoformat(),
        "suspensions": suspensions,
        "rate_limits": rate_limits,
        "cap_violations": cap_violations,
        "approaching_caps": {"total": len(approaching), "projects": approaching[:_APPROACHING_LIMIT]},
        "suspicious_patterns": patterns,
    }

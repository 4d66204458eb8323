from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Mapping

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import CAP_RESOURCES, get_settings
from abuseguard.core.errors import (
    NotFoundError,
    ProjectSuspendedError,
    QuotaExceededError,
    ValidationError,
)
from abuseguard.domain.enforcement import ProjectStatus
from abuseguard.domain.models import Project, ProjectUsage
from abuseguard.persistence.db import Database, upsert_insert
from abuseguard.persistence.repos.projects import get_project, load_caps, write_caps


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaCheck:
    resource: str
    allowed: bool
    limit: int
    used: int
    remaining: int


@dataclass(frozen=True)
class QuotaWarning:
    resource: str
    used: int
    limit: int
    ratio: float
    level: str


@dataclass(frozen=True)
class AbusiveProject:
    project_id: str
    resource: str
    denied: int
    environment: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_start(now: datetime) -> datetime:
    # Caps are daily; counters roll over at UTC midnight.
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def _validate_resource(resource: str) -> str:
    if resource not in CAP_RESOURCES:
        raise ValidationError(
            f"Unknown cap resource: {resource}",
            details={"resource": resource, "allowed": list(CAP_RESOURCES)},
        )
    return resource


def validate_cap_values(new_caps: Mapping[str, int]) -> dict[str, int]:
    # Shape check shared by overrides and admin tooling.
    max_value = get_settings().max_cap_value
    if not new_caps:
        raise ValidationError("At least one cap value is required")
    validated: dict[str, int] = {}
    for resource, value in new_caps.items():
        _validate_resource(resource)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value != int(value):
            raise ValidationError(
                f"Cap value for {resource} must be an integer",
                details={"resource": resource},
            )
        if value < 0 or value > max_value:
            raise ValidationError(
                f"Cap value for {resource} must be between 0 and {max_value}",
                details={"resource": resource, "value": value},
            )
        validated[resource] = int(value)
    return validated


class QuotaManager:
    def __init__(self, database: Database, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic rollover tests.
        self._database = database
        self._time_provider = time_provider or _utc_now

    async def _require_project(self, session: AsyncSession, project_id: str) -> Project:
        project = await get_project(session, project_id)
        if project is None or project.deleted_at is not None:
            raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
        return project

    async def _used(self, session: AsyncSession, project_id: str, resource: str, start: datetime) -> int:
        result = await session.execute(
            select(ProjectUsage.used).where(
                ProjectUsage.project_id == project_id,
                ProjectUsage.resource == resource,
                ProjectUsage.period_start == start,
            )
        )
        value = result.scalar_one_or_none()
        return int(value or 0)

    async def get_caps(self, project_id: str) -> dict[str, int]:
        async with self._database.session() as session:
            await self._require_project(session, project_id)
            return await load_caps(session, project_id)

    async def check_quota(self, project_id: str, resource: str) -> QuotaCheck:
        # Read-only; never touches counters.
        _validate_resource(resource)
        async with self._database.session() as session:
            project = await self._require_project(session, project_id)
            caps = await load_caps(session, project_id)
            limit = int(caps.get(resource, 0))
            used = await self._used(session, project_id, resource, period_start(self._time_provider()))
        return QuotaCheck(
            resource=resource,
            allowed=project.status == ProjectStatus.ACTIVE.value and used < limit,
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
        )

    async def enforce_cap(self, project_id: str, resource: str, requested: int = 1) -> QuotaCheck:
        """Atomically consume ``requested`` units or raise ``QuotaExceededError``.

        The increment is a conditional ``UPDATE ... WHERE used + n <= cap`` so
        concurrent callers for the same project can never overshoot the cap.
        Rejected attempts bump the ``denied`` counter that feeds abuse scans.
        """
        _validate_resource(resource)
        if isinstance(requested, bool) or int(requested) < 1:
            raise ValidationError("requested must be a positive integer", details={"requested": requested})
        requested = int(requested)
        start = period_start(self._time_provider())

        async with self._database.session() as session:
            async with session.begin():
                project = await self._require_project(session, project_id)
                if project.status != ProjectStatus.ACTIVE.value:
                    raise ProjectSuspendedError(
                        f"Project {project_id} is {project.status}",
                        project_id=project_id,
                        status=project.status,
                    )
                caps = await load_caps(session, project_id)
                limit = int(caps.get(resource, 0))
                ensure_row = upsert_insert(session, ProjectUsage).values(
                    project_id=project_id,
                    resource=resource,
                    period_start=start,
                    used=0,
                    denied=0,
                ).on_conflict_do_nothing(index_elements=["project_id", "resource", "period_start"])
                await session.execute(ensure_row)
                key = (
                    ProjectUsage.project_id == project_id,
                    ProjectUsage.resource == resource,
                    ProjectUsage.period_start == start,
                )
                consumed = (
                    await session.execute(
                        update(ProjectUsage)
                        .where(*key, ProjectUsage.used + requested <= limit)
                        .values(used=ProjectUsage.used + requested)
                        .returning(ProjectUsage.used)
                        .execution_options(synchronize_session=False)
                    )
                ).scalar_one_or_none()
                if consumed is None:
                    used = (
                        await session.execute(
                            update(ProjectUsage)
                            .where(*key)
                            .values(denied=ProjectUsage.denied + 1)
                            .returning(ProjectUsage.used)
                            .execution_options(synchronize_session=False)
                        )
                    ).scalar_one()

        if consumed is None:
            logger.info(
                "quota_exceeded project_id=%s resource=%s used=%s requested=%s limit=%s",
                project_id,
                resource,
                used,
                requested,
                limit,
            )
            raise QuotaExceededError(
                f"Quota exceeded for {resource}",
                project_id=project_id,
                resource=resource,
                limit=limit,
                used=int(used),
            )
        consumed = int(consumed)
        return QuotaCheck(
            resource=resource,
            allowed=True,
            limit=limit,
            used=consumed,
            remaining=max(0, limit - consumed),
        )

    async def increase_caps(
        self,
        session: AsyncSession,
        project_id: str,
        new_caps: Mapping[str, int],
    ) -> tuple[dict[str, int], dict[str, int]]:
        # Runs inside the caller's transaction; caps may only grow through this path.
        validated = validate_cap_values(new_caps)
        previous = await load_caps(session, project_id)
        decreases = {
            resource: {"current": previous.get(resource, 0), "requested": value}
            for resource, value in validated.items()
            if value < previous.get(resource, 0)
        }
        if decreases:
            raise ValidationError("Caps may only be increased through an override", details={"decreases": decreases})
        await write_caps(session, project_id, validated)
        return previous, {**previous, **validated}

    async def set_default_caps(self, session: AsyncSession, project_id: str) -> dict[str, int]:
        defaults = {resource: int(value) for resource, value in get_settings().default_caps.items()}
        await write_caps(session, project_id, defaults)
        return defaults

    async def list_approaching_caps(self, project_id: str, *, ratio: float | None = None) -> list[QuotaWarning]:
        # 80% and 90% usage levels, matching the quota warning emails.
        threshold = float(ratio if ratio is not None else get_settings().quota_warning_ratio)
        start = period_start(self._time_provider())
        warnings: list[QuotaWarning] = []
        async with self._database.session() as session:
            await self._require_project(session, project_id)
            caps = await load_caps(session, project_id)
            result = await session.execute(
                select(ProjectUsage).where(
                    ProjectUsage.project_id == project_id,
                    ProjectUsage.period_start == start,
                )
            )
            for usage in result.scalars().all():
                limit = int(caps.get(usage.resource, 0))
                if limit <= 0:
                    continue
                used_ratio = usage.used / limit
                if used_ratio >= threshold:
                    warnings.append(
                        QuotaWarning(
                            resource=usage.resource,
                            used=int(usage.used),
                            limit=limit,
                            ratio=round(used_ratio, 4),
                            level="critical" if used_ratio >= 0.9 else "warning",
                        )
                    )
        return sorted(warnings, key=lambda item: item.ratio, reverse=True)

    async def find_abusive_projects(self, *, threshold: int | None = None) -> list[AbusiveProject]:
        # Active projects that keep hammering a cap after being denied this period.
        minimum = int(threshold if threshold is not None else get_settings().quota_abuse_denied_threshold)
        start = period_start(self._time_provider())
        async with self._database.session() as session:
            result = await session.execute(
                select(ProjectUsage.project_id, ProjectUsage.resource, ProjectUsage.denied, Project.environment)
                .join(Project, Project.id == ProjectUsage.project_id)
                .where(
                    ProjectUsage.period_start == start,
                    ProjectUsage.denied >= minimum,
                    Project.status == ProjectStatus.ACTIVE.value,
                    Project.deleted_at.is_(None),
                )
                .order_by(ProjectUsage.denied.desc())
            )
            rows = result.all()
        flagged: dict[str, AbusiveProject] = {}
        for project_id, resource, denied, environment in rows:
            if project_id not in flagged:
                flagged[project_id] = AbusiveProject(
                    project_id=str(project_id),
                    resource=str(resource),
                    denied=int(denied),
                    environment=str(environment),
                )
        return list(flagged.values())

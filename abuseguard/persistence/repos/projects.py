from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.domain.models import Project, ProjectCap, ProjectMember, Suspension


async def get_project(session: AsyncSession, project_id: str, *, for_update: bool = False) -> Project | None:
    # Row lock serializes enforcement transitions per project.
    stmt = select(Project).where(Project.id == project_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def load_caps(session: AsyncSession, project_id: str) -> dict[str, int]:
    # Stored caps layered over the configured defaults.
    caps = {resource: int(value) for resource, value in get_settings().default_caps.items()}
    result = await session.execute(select(ProjectCap).where(ProjectCap.project_id == project_id))
    for row in result.scalars().all():
        caps[row.resource] = int(row.cap_value)
    return caps


async def write_caps(session: AsyncSession, project_id: str, caps: Mapping[str, int]) -> None:
    existing = {
        row.resource: row
        for row in (
            await session.execute(select(ProjectCap).where(ProjectCap.project_id == project_id))
        ).scalars()
    }
    for resource, value in caps.items():
        row = existing.get(resource)
        if row is None:
            session.add(ProjectCap(project_id=project_id, resource=resource, cap_value=int(value)))
        else:
            row.cap_value = int(value)
    await session.flush()


async def snapshot_state(session: AsyncSession, project: Project) -> dict[str, Any]:
    # JSON-safe copy of the enforcement state stored with overrides.
    return {
        "status": project.status,
        "caps": await load_caps(session, project.id),
        "suspended_at": project.suspended_at.isoformat() if project.suspended_at else None,
        "suspension_reason": project.suspension_reason,
    }


async def get_open_suspension(session: AsyncSession, project_id: str) -> Suspension | None:
    result = await session.execute(
        select(Suspension).where(Suspension.project_id == project_id, Suspension.resolved_at.is_(None))
    )
    return result.scalar_one_or_none()


async def list_members(
    session: AsyncSession,
    project_id: str,
    *,
    roles: tuple[str, ...] | None = None,
) -> list[ProjectMember]:
    stmt = select(ProjectMember).where(ProjectMember.project_id == project_id)
    if roles:
        stmt = stmt.where(ProjectMember.role.in_(roles))
    result = await session.execute(stmt.order_by(ProjectMember.id))
    return list(result.scalars().all())

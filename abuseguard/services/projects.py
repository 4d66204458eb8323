from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Sequence
from uuid import uuid4

from abuseguard.core.errors import NotFoundError, ValidationError
from abuseguard.domain.enforcement import (
    AUDIT_PROJECT_ARCHIVED,
    AUDIT_PROJECT_PROVISIONED,
    ActorType,
    ProjectEnvironment,
    ProjectStatus,
)
from abuseguard.domain.models import Project, ProjectMember
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.projects import get_open_suspension, get_project
from abuseguard.services.audit import SYSTEM_ACTOR_ID, record_entry
from abuseguard.services.quota import QuotaManager


logger = logging.getLogger(__name__)

_MEMBER_ROLES = {"owner", "admin", "developer", "viewer"}


@dataclass(frozen=True)
class MemberSpec:
    user_id: str
    role: str
    email: str | None = None


async def provision_project(
    database: Database,
    *,
    name: str,
    organization_id: str,
    owner_id: str,
    owner_email: str | None = None,
    environment: ProjectEnvironment = ProjectEnvironment.PROD,
    members: Sequence[MemberSpec] = (),
    project_id: str | None = None,
) -> Project:
    # New projects start ACTIVE with the default caps and the owner in the recipient directory.
    for member in members:
        if member.role not in _MEMBER_ROLES:
            raise ValidationError(f"Unsupported member role: {member.role}", details={"user_id": member.user_id})
    now = datetime.now(timezone.utc)
    project = Project(
        id=project_id or uuid4().hex,
        name=name,
        organization_id=organization_id,
        owner_id=owner_id,
        environment=environment.value,
        status=ProjectStatus.ACTIVE.value,
        created_at=now,
        updated_at=now,
    )
    async with database.session() as session:
        async with session.begin():
            session.add(project)
            await session.flush()
            caps = await QuotaManager(database).set_default_caps(session, project.id)
            session.add(ProjectMember(project_id=project.id, user_id=owner_id, email=owner_email, role="owner"))
            for member in members:
                if member.user_id == owner_id:
                    continue
                session.add(
                    ProjectMember(project_id=project.id, user_id=member.user_id, email=member.email, role=member.role)
                )
            await record_entry(
                session=session,
                actor_id=SYSTEM_ACTOR_ID,
                actor_type=ActorType.SYSTEM,
                action=AUDIT_PROJECT_PROVISIONED,
                target_type="project",
                target_id=project.id,
                project_id=project.id,
                metadata={"organization_id": organization_id, "environment": environment.value, "caps": caps},
                created_at=now,
            )
    logger.info("project_provisioned project_id=%s organization_id=%s", project.id, organization_id)
    return project


async def archive_project(database: Database, project_id: str, *, actor_id: str) -> Project:
    # Logical deletion; archived projects are excluded from scans and never transitioned again.
    now = datetime.now(timezone.utc)
    async with database.session() as session:
        async with session.begin():
            project = await get_project(session, project_id, for_update=True)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
            if project.status == ProjectStatus.ARCHIVED.value:
                return project
            previous_status = project.status
            open_record = await get_open_suspension(session, project_id)
            if open_record is not None:
                open_record.resolved_at = now
                open_record.resolved_by = actor_id
            project.status = ProjectStatus.ARCHIVED.value
            project.deleted_at = now
            project.updated_at = now
            await session.flush()
            await record_entry(
                session=session,
                actor_id=actor_id,
                actor_type=ActorType.USER,
                action=AUDIT_PROJECT_ARCHIVED,
                target_type="project",
                target_id=project_id,
                project_id=project_id,
                metadata={"previous_status": previous_status},
                created_at=now,
            )
    logger.info("project_archived project_id=%s actor_id=%s", project_id, actor_id)
    return project

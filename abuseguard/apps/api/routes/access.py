from __future__ import annotations

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.apps.api.deps import Principal, get_client_ip
from abuseguard.core.errors import AuthorizationError, NotFoundError
from abuseguard.domain.enforcement import AUDIT_AUTH_FORBIDDEN, ActorType
from abuseguard.domain.models import Project
from abuseguard.persistence.repos.projects import get_project
from abuseguard.services.audit import record_entry
from abuseguard.services.auth.api_keys import OVERRIDE_ROLES


async def ensure_project_access(
    db: AsyncSession,
    request: Request,
    project_id: str,
    principal: Principal,
) -> Project:
    # Project owners read their own enforcement data; operators and admins read any project.
    project = await get_project(db, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found", details={"project_id": project_id})
    if principal.role in OVERRIDE_ROLES or project.owner_id == principal.subject_id:
        return project
    await record_entry(
        session=db,
        actor_id=principal.subject_id,
        actor_type=ActorType.USER,
        action=AUDIT_AUTH_FORBIDDEN,
        target_type="project",
        target_id=project_id,
        project_id=project_id,
        metadata={"path": request.url.path, "method": request.method, "role": principal.role},
        ip_address=get_client_ip(request),
        commit=True,
        best_effort=True,
    )
    raise AuthorizationError("Project owner, operator or admin role required", actor_id=principal.subject_id)

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.apps.api.deps import (
    Principal,
    get_client_ip,
    get_current_principal,
    get_db,
    get_override_manager,
)
from abuseguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from abuseguard.apps.api.response import success_response
from abuseguard.apps.api.routes.access import ensure_project_access
from abuseguard.services.overrides import Operator, OverrideManager, serialize_override


router = APIRouter(tags=["overrides"], responses=DEFAULT_ERROR_RESPONSES)


async def _read_json_body(request: Request) -> Any:
    # Undecodable bodies are rejected by the override manager after its access checks.
    try:
        return await request.json()
    except ValueError:
        return None


@router.post("/projects/{project_id}/overrides", status_code=201)
async def create_override(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    manager: OverrideManager = Depends(get_override_manager),
) -> dict:
    # Role, rate limit, body validation and atomicity are enforced by the override manager.
    result = await manager.perform_override(
        project_id,
        await _read_json_body(request),
        Operator(id=principal.subject_id, role=principal.role),
        client_ip=get_client_ip(request),
    )
    return success_response(request=request, data=result.to_dict())


@router.get("/projects/{project_id}/overrides")
async def list_overrides(
    project_id: str,
    request: Request,
    limit: int | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    manager: OverrideManager = Depends(get_override_manager),
) -> dict:
    await ensure_project_access(db, request, project_id, principal)
    records = await manager.list_overrides(project_id, limit=limit)
    return success_response(request=request, data={"items": [serialize_override(record) for record in records]})

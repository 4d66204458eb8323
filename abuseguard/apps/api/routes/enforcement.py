from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.apps.api.deps import Principal, get_current_principal, get_db, get_suspension_manager
from abuseguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from abuseguard.apps.api.response import success_response
from abuseguard.apps.api.routes.access import ensure_project_access
from abuseguard.services.suspension import SuspensionManager, serialize_suspension


router = APIRouter(tags=["enforcement"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/projects/{project_id}/enforcement")
async def get_enforcement(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    suspension: SuspensionManager = Depends(get_suspension_manager),
) -> dict:
    await ensure_project_access(db, request, project_id, principal)
    status = await suspension.get_status(project_id)
    history = await suspension.list_history(project_id, limit=10)
    data = status.to_dict()
    data["recent_suspensions"] = [serialize_suspension(record) for record in history]
    return success_response(request=request, data=data)

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from abuseguard.apps.api.deps import (
    Principal,
    get_client_ip,
    get_database_handle,
    get_override_manager,
    get_suspension_manager,
    require_role,
)
from abuseguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from abuseguard.apps.api.response import success_response
from abuseguard.core.config import get_settings
from abuseguard.domain.enforcement import ActorType, DetectorKind, IdentifierType, SuspensionReason
from abuseguard.persistence.db import Database
from abuseguard.services.dashboard import build_abuse_dashboard
from abuseguard.services.overrides import OverrideManager
from abuseguard.services.rate_limit import RateLimiter
from abuseguard.services.scheduler import run_detector_scan
from abuseguard.services.suspension import SuspensionManager, serialize_suspension


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class ManualSuspendRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(min_length=1, max_length=1000)
    details: dict[str, Any] | None = None


@router.post("/projects/{project_id}/suspend")
async def suspend_project(
    project_id: str,
    payload: ManualSuspendRequest,
    request: Request,
    principal: Principal = Depends(require_role("operator")),
    suspension: SuspensionManager = Depends(get_suspension_manager),
) -> dict:
    outcome = await suspension.suspend(
        project_id,
        SuspensionReason.MANUAL,
        triggered_by=principal.subject_id,
        details={"note": payload.reason, **(payload.details or {})},
        actor_type=ActorType.USER,
        ip_address=get_client_ip(request),
    )
    return success_response(
        request=request,
        data={
            "project_id": project_id,
            "created": outcome.created,
            "status": outcome.status,
            "suspension": serialize_suspension(outcome.record) if outcome.record else None,
        },
    )


@router.post("/detection/{detector}/scan")
async def scan_detector(
    detector: DetectorKind,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    database: Database = Depends(get_database_handle),
    suspension: SuspensionManager = Depends(get_suspension_manager),
) -> dict:
    report = await run_detector_scan(database, detector, suspension=suspension)
    return success_response(request=request, data=report)


@router.get("/suspensions")
async def list_suspensions(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_role("operator")),
    suspension: SuspensionManager = Depends(get_suspension_manager),
) -> dict:
    records = await suspension.list_open_suspensions(limit=limit)
    return success_response(request=request, data={"items": [serialize_suspension(record) for record in records]})


@router.get("/overrides/stats")
async def override_stats(
    request: Request,
    principal: Principal = Depends(require_role("operator")),
    manager: OverrideManager = Depends(get_override_manager),
) -> dict:
    return success_response(request=request, data=await manager.override_statistics())


@router.get("/abuse/dashboard")
async def abuse_dashboard(
    request: Request,
    time_range: str = Query(default="24h"),
    principal: Principal = Depends(require_role("operator")),
    database: Database = Depends(get_database_handle),
) -> dict:
    settings = get_settings()
    await RateLimiter(database).enforce(
        IdentifierType.ORG,
        f"dashboard:{principal.subject_id}",
        limit=settings.dashboard_rate_limit,
        window_s=settings.dashboard_rate_window_s,
    )
    return success_response(request=request, data=await build_abuse_dashboard(database, time_range=time_range))

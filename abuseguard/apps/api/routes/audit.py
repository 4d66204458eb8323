from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.apps.api.deps import Principal, get_db, require_role
from abuseguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from abuseguard.apps.api.response import success_response
from abuseguard.core.errors import InternalError
from abuseguard.domain.models import AuditLog
from abuseguard.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: str
    actor_type: str
    action: str
    target_type: str
    target_id: str | None
    project_id: str | None
    metadata: dict[str, Any] | None
    ip_address: str | None
    created_at: str


def _to_response(entry: AuditLog) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        actor_id=entry.actor_id,
        actor_type=entry.actor_type,
        action=entry.action,
        target_type=entry.target_type,
        target_id=entry.target_id,
        project_id=entry.project_id,
        metadata=entry.metadata_json,
        ip_address=entry.ip_address,
        created_at=entry.created_at.isoformat(),
    )


@router.get("/entries")
async def list_audit_entries(
    request: Request,
    project_id: str | None = None,
    action: str | None = None,
    actor_id: str | None = None,
    target_type: str | None = None,
    created_from: datetime | None = Query(default=None, alias="from"),
    created_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Fetch one extra row to tell callers whether another page exists.
    try:
        entries = await audit_repo.list_entries(
            db,
            project_id=project_id,
            action=action,
            actor_id=actor_id,
            target_type=target_type,
            created_from=created_from,
            created_to=created_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise InternalError("Database error while fetching audit entries") from exc

    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    return success_response(
        request=request,
        data={
            "items": [_to_response(entry).model_dump() for entry in entries],
            "next_offset": next_offset,
        },
    )

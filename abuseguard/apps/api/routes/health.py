from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from abuseguard.apps.api.deps import get_database_handle
from abuseguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from abuseguard.apps.api.response import SuccessEnvelope, success_response
from abuseguard.persistence.db import Database

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, database: Database = Depends(get_database_handle)) -> dict:
    # Report degraded instead of failing so load balancers can still read the body.
    db_status = "ok"
    try:
        async with database.session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db_status = "unavailable"
    payload = HealthResponse(status="ok" if db_status == "ok" else "degraded", database=db_status)
    return success_response(request=request, data=payload.model_dump())

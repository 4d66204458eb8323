from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from abuseguard.domain.enforcement import ActorType
from abuseguard.domain.models import AuditLog, utc_now
from abuseguard.persistence.db import Database, get_database
from abuseguard.services.rate_limit import extract_client_ip


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

SYSTEM_ACTOR_ID = "system"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    return {
        "request_id": request.headers.get("X-Request-Id"),
        "ip_address": extract_client_ip(request.headers),
        "user_agent": request.headers.get("user-agent"),
    }


def _build_entry(
    *,
    actor_id: str,
    actor_type: ActorType | str,
    action: str,
    target_type: str,
    target_id: str | None,
    project_id: str | None,
    metadata: dict[str, Any] | None,
    ip_address: str | None,
    created_at: datetime | None,
) -> AuditLog:
    return AuditLog(
        actor_id=actor_id,
        actor_type=ActorType(actor_type).value,
        action=action,
        target_type=target_type,
        target_id=target_id,
        project_id=project_id,
        metadata_json=sanitize_metadata(metadata or {}),
        ip_address=ip_address,
        created_at=created_at or utc_now(),
    )


async def record_entry(
    *,
    session: AsyncSession | None = None,
    database: Database | None = None,
    actor_id: str,
    actor_type: ActorType | str,
    action: str,
    target_type: str,
    target_id: str | None = None,
    project_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
    created_at: datetime | None = None,
    commit: bool = False,
    best_effort: bool = False,
) -> AuditLog | None:
    """Append one audit entry.

    With a caller session the row joins the caller's transaction and is flushed
    immediately so a failed write aborts that transaction. Without a session a
    dedicated one is opened and committed. ``best_effort`` entries log write
    failures instead of raising.
    """
    entry = _build_entry(
        actor_id=actor_id,
        actor_type=actor_type,
        action=action,
        target_type=target_type,
        target_id=target_id,
        project_id=project_id,
        metadata=metadata,
        ip_address=ip_address,
        created_at=created_at,
    )

    if session is None:
        async with (database or get_database()).session() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                if not best_effort:
                    raise
                logger.warning(
                    "audit_entry_write_failed action=%s project_id=%s",
                    action,
                    project_id,
                    exc_info=exc,
                )
                return None
        return entry

    try:
        session.add(entry)
        await session.flush()
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if not best_effort:
            raise
        if commit:
            await session.rollback()
        logger.warning(
            "audit_entry_write_failed action=%s project_id=%s",
            action,
            project_id,
            exc_info=exc,
        )
        return None
    return entry

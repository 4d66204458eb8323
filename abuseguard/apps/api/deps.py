from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.core.errors import AuthenticationError, AuthorizationError, InternalError
from abuseguard.domain.enforcement import AUDIT_AUTH_FAILURE, AUDIT_AUTH_FORBIDDEN, ActorType
from abuseguard.domain.models import ApiKey, User
from abuseguard.persistence.db import Database
from abuseguard.services.audit import get_request_context, record_entry
from abuseguard.services.auth.api_keys import hash_api_key, normalize_role, role_allows
from abuseguard.services.notifications import NotificationManager
from abuseguard.services.overrides import OverrideManager
from abuseguard.services.suspension import SuspensionManager


_ANONYMOUS_ACTOR = "anonymous"


def get_database_handle(request: Request) -> Database:
    # The app owns one Database handle; tests swap it through create_app(database=...).
    return request.app.state.database


async def get_db(database: Database = Depends(get_database_handle)) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


class Principal(BaseModel):
    subject_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


def _request_metadata(request: Request) -> dict[str, str]:
    return {"path": request.url.path, "method": request.method}


async def _audit_auth_failure(database: Database, request: Request, reason: str) -> None:
    await record_entry(
        database=database,
        actor_id=_ANONYMOUS_ACTOR,
        actor_type=ActorType.USER,
        action=AUDIT_AUTH_FAILURE,
        target_type="auth",
        metadata={**_request_metadata(request), "reason": reason},
        ip_address=get_request_context(request)["ip_address"],
        best_effort=True,
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Header identities are only honored when the dev bypass is explicitly enabled.
    actor_id = request.headers.get("X-Actor-Id")
    if not actor_id:
        raise AuthenticationError("X-Actor-Id header is required in dev bypass mode")
    try:
        role = normalize_role(request.headers.get("X-Role", "operator"))
    except ValueError as exc:
        raise AuthenticationError(str(exc)) from exc
    return Principal(subject_id=actor_id, role=role, api_key_id="dev-bypass", auth_method="dev_bypass")


async def get_current_principal(
    request: Request,
    database: Database = Depends(get_database_handle),
) -> Principal:
    """Resolve the bearer API key into an operator principal.

    Every rejection is written to the audit log before the 401 is returned.
    """
    settings = get_settings()
    try:
        token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    except AuthenticationError as exc:
        await _audit_auth_failure(database, request, exc.message)
        raise

    if not settings.auth_enabled or (token is None and settings.auth_dev_bypass):
        if settings.auth_dev_bypass:
            try:
                return _principal_from_dev_headers(request)
            except AuthenticationError as exc:
                await _audit_auth_failure(database, request, exc.message)
                raise
        await _audit_auth_failure(database, request, "authentication disabled")
        raise AuthenticationError("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")

    if token is None:
        await _audit_auth_failure(database, request, "missing api key")
        raise AuthenticationError("Missing API key")

    key_hash = hash_api_key(token)
    now = datetime.now(timezone.utc)
    try:
        async with database.session() as session:
            row = (
                await session.execute(
                    select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
                )
            ).first()
            if row is not None:
                await session.execute(update(ApiKey).where(ApiKey.id == row[0].id).values(last_used_at=now))
                await session.commit()
    except SQLAlchemyError as exc:
        await _audit_auth_failure(database, request, "credential store unavailable")
        raise InternalError("Authentication unavailable") from exc

    if row is None:
        await _audit_auth_failure(database, request, "invalid api key")
        raise AuthenticationError("Invalid API key")
    api_key, user = row
    if api_key.revoked_at is not None:
        await _audit_auth_failure(database, request, "revoked api key")
        raise AuthenticationError("API key revoked")
    if api_key.expires_at is not None and api_key.expires_at <= now:
        await _audit_auth_failure(database, request, "expired api key")
        raise AuthenticationError("API key expired")
    if not user.is_active:
        await _audit_auth_failure(database, request, "inactive user")
        raise AuthenticationError("User is inactive")
    return Principal(subject_id=user.id, role=user.role, api_key_id=api_key.id)


def require_role(minimum_role: str) -> Callable[..., Awaitable[Principal]]:
    async def _require(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        database: Database = Depends(get_database_handle),
    ) -> Principal:
        if role_allows(role=principal.role, minimum_role=minimum_role):
            return principal
        await record_entry(
            database=database,
            actor_id=principal.subject_id,
            actor_type=ActorType.USER,
            action=AUDIT_AUTH_FORBIDDEN,
            target_type="route",
            target_id=request.url.path,
            metadata={**_request_metadata(request), "role": principal.role, "required": minimum_role},
            ip_address=get_request_context(request)["ip_address"],
            best_effort=True,
        )
        raise AuthorizationError(f"{minimum_role} role required", actor_id=principal.subject_id)

    return _require


def get_client_ip(request: Request) -> str | None:
    return get_request_context(request)["ip_address"]


def get_notification_manager(database: Database = Depends(get_database_handle)) -> NotificationManager:
    return NotificationManager(database)


def get_suspension_manager(
    database: Database = Depends(get_database_handle),
    notifications: NotificationManager = Depends(get_notification_manager),
) -> SuspensionManager:
    return SuspensionManager(database, notifications=notifications)


def get_override_manager(
    database: Database = Depends(get_database_handle),
    notifications: NotificationManager = Depends(get_notification_manager),
    suspension: SuspensionManager = Depends(get_suspension_manager),
) -> OverrideManager:
    return OverrideManager(database, suspension=suspension, notifications=notifications)

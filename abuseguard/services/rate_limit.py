from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Callable, Mapping

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from abuseguard.core.config import get_settings
from abuseguard.core.errors import InternalError, RateLimitedError
from abuseguard.domain.enforcement import IdentifierType
from abuseguard.domain.models import RateLimitWindow
from abuseguard.persistence.db import Database, upsert_insert


logger = logging.getLogger(__name__)

_UNKNOWN_IP = "0.0.0.0"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    attempt_count: int
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_s: int

    def headers(self) -> dict[str, str]:
        # Standard rate-limit hints for API responses.
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_s)
        return headers


def extract_client_ip(headers: Mapping[str, str]) -> str:
    # Prefer proxy-provided client addresses; first hop of X-Forwarded-For is the client.
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(header)
        if value and value.strip():
            return value.strip()
    return _UNKNOWN_IP


class RateLimiter:
    """Per-identifier window counters stored in ``rate_limits``.

    A window opens at the first attempt and lasts ``window_s``; the next
    attempt after it ends opens a fresh one.

    Each hit is a single atomic upsert that increments the active window and
    returns the new count, so concurrent callers can never both observe a
    count under the limit once it has been reached.
    """

    def __init__(
        self,
        database: Database,
        *,
        time_provider: Callable[[], datetime] | None = None,
        fail_mode: str | None = None,
    ) -> None:
        self._database = database
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))
        self._fail_mode = (fail_mode or get_settings().rate_limit_fail_mode).lower()

    async def check(
        self,
        identifier_type: IdentifierType,
        identifier_value: str,
        *,
        limit: int,
        window_s: int,
    ) -> RateLimitDecision:
        now = self._time_provider()
        duration = timedelta(seconds=max(1, int(window_s)))
        window_start = now
        try:
            async with self._database.session() as session:
                async with session.begin():
                    # Windows whose duration has elapsed are closed for this identifier.
                    await session.execute(
                        delete(RateLimitWindow).where(
                            RateLimitWindow.identifier_type == identifier_type.value,
                            RateLimitWindow.identifier_value == identifier_value,
                            RateLimitWindow.window_start <= now - duration,
                        )
                    )
                    active_start = (
                        await session.execute(
                            select(RateLimitWindow.window_start)
                            .where(
                                RateLimitWindow.identifier_type == identifier_type.value,
                                RateLimitWindow.identifier_value == identifier_value,
                            )
                            .order_by(RateLimitWindow.window_start.asc())
                            .limit(1)
                            .with_for_update()
                        )
                    ).scalar_one_or_none()
                    # A new window opens at the first attempt after the previous one ended.
                    if active_start is not None:
                        window_start = active_start
                    stmt = upsert_insert(session, RateLimitWindow).values(
                        identifier_type=identifier_type.value,
                        identifier_value=identifier_value,
                        window_start=window_start,
                        attempt_count=1,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["identifier_type", "identifier_value", "window_start"],
                        set_={"attempt_count": RateLimitWindow.attempt_count + 1},
                    ).returning(RateLimitWindow.attempt_count)
                    attempt_count = int((await session.execute(stmt)).scalar_one())
        except SQLAlchemyError as exc:
            logger.warning(
                "rate_limit_store_unavailable identifier_type=%s fail_mode=%s",
                identifier_type.value,
                self._fail_mode,
                exc_info=exc,
            )
            if self._fail_mode == "open":
                return RateLimitDecision(
                    allowed=True,
                    attempt_count=0,
                    limit=limit,
                    remaining=limit,
                    reset_at=now + duration,
                    retry_after_s=0,
                )
            raise InternalError("Rate limiter unavailable") from exc

        reset_at = window_start + duration
        allowed = attempt_count <= limit
        retry_after_s = 0 if allowed else max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitDecision(
            allowed=allowed,
            attempt_count=attempt_count,
            limit=limit,
            remaining=max(0, limit - attempt_count),
            reset_at=reset_at,
            retry_after_s=retry_after_s,
        )

    async def enforce(
        self,
        identifier_type: IdentifierType,
        identifier_value: str,
        *,
        limit: int,
        window_s: int,
    ) -> RateLimitDecision:
        # Raise a retryable error carrying reset_at once the window quota is spent.
        decision = await self.check(identifier_type, identifier_value, limit=limit, window_s=window_s)
        if not decision.allowed:
            logger.info(
                "rate_limited identifier_type=%s attempts=%s limit=%s",
                identifier_type.value,
                decision.attempt_count,
                limit,
            )
            raise RateLimitedError(
                "Too many requests; retry after the current window resets",
                reset_at=decision.reset_at,
                retry_after_seconds=decision.retry_after_s,
                limit=limit,
            )
        return decision

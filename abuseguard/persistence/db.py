from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from abuseguard.core.config import Settings, get_settings


def _engine_kwargs(database_url: str, settings: Settings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # Wait on sqlite writer locks instead of failing concurrent sessions immediately.
        kwargs["connect_args"] = {"timeout": 30}
        return kwargs
    # Configure bounded asyncpg pools for predictable latency under load.
    kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0 and database_url.startswith("postgresql+asyncpg"):
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return kwargs


class Database:
    """Process-scoped store handle passed into every manager.

    Sessions are only handed out through ``session()`` so connections are
    released on every exit path, including errors.
    """

    def __init__(self, database_url: str | None = None, *, engine: AsyncEngine | None = None) -> None:
        settings = get_settings()
        if engine is None:
            url = database_url or settings.database_url
            engine = create_async_engine(url, **_engine_kwargs(url, settings))
        self.engine = engine
        self.sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()

    def pool_stats(self) -> dict[str, int | None]:
        # Expose DB pool counters for ops visibility without querying Postgres internals.
        pool = self.engine.sync_engine.pool
        checked_out_fn = getattr(pool, "checkedout", None)
        checked_in_fn = getattr(pool, "checkedin", None)
        overflow_fn = getattr(pool, "overflow", None)
        size_fn = getattr(pool, "size", None)
        return {
            "size": int(size_fn()) if callable(size_fn) else None,
            "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
            "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
            "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
        }


def upsert_insert(session: AsyncSession, table: Any):
    # Pick the dialect insert construct that supports ON CONFLICT for the bound engine.
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        return pg_insert(table)
    if bind.dialect.name == "sqlite":
        return sqlite_insert(table)
    raise NotImplementedError(f"upsert not supported for dialect {bind.dialect.name}")


@lru_cache
def get_database() -> Database:
    # Default handle for process entrypoints (API app, worker, scripts).
    return Database()

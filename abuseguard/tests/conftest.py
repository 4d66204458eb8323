from __future__ import annotations

from datetime import datetime, timezone

import pytest

from abuseguard.core.config import get_settings
from abuseguard.domain.models import Base
from abuseguard.persistence.db import Database
from abuseguard.tests.utils.factories import FixedClock


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear cached settings so monkeypatched env vars apply per test.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def database(tmp_path) -> Database:
    # File-backed sqlite so concurrent sessions share one schema.
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'abuseguard.db'}")
    async with db.engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield db
    await db.dispose()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))

from __future__ import annotations

import asyncio

from abuseguard.core.logging import configure_logging
from abuseguard.persistence.db import get_database
from abuseguard.services.scheduler import (
    run_detection_loop,
    run_notification_retry_loop,
    run_quota_enforcement_loop,
)


async def _main() -> None:
    # Standalone enforcement loops for deployments without the arq worker.
    configure_logging()
    database = get_database()
    await asyncio.gather(
        run_detection_loop(database),
        run_notification_retry_loop(database),
        run_quota_enforcement_loop(database),
    )


if __name__ == "__main__":
    asyncio.run(_main())

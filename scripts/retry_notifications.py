from __future__ import annotations

import argparse
import asyncio

from abuseguard.core.logging import configure_logging
from abuseguard.persistence.db import get_database
from abuseguard.services.notifications import NotificationManager


async def retry(max_attempts: int | None) -> None:
    database = get_database()
    try:
        summary = await NotificationManager(database).retry_failed_notifications(max_attempts)
    finally:
        await database.dispose()
    print(" ".join(f"{key}={value}" for key, value in summary.to_dict().items()))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Retry failed enforcement notifications")
    parser.add_argument("--max-attempts", type=int, default=None)
    configure_logging()
    asyncio.run(retry(parser.parse_args().max_attempts))

from __future__ import annotations

import argparse
import asyncio

from abuseguard.persistence.db import get_database
from abuseguard.services.scheduler import run_metrics_prune_cycle


async def prune(retention_days: int | None) -> None:
    database = get_database()
    try:
        deleted = await run_metrics_prune_cycle(database, retention_days=retention_days)
    finally:
        await database.dispose()
    print(f"pruned_samples={deleted['samples']} pruned_access_events={deleted['access_events']}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete metric samples and access events past retention")
    parser.add_argument("--retention-days", type=int, default=None)
    asyncio.run(prune(parser.parse_args().retention_days))

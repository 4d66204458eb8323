from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from abuseguard.core.config import get_settings
from abuseguard.core.logging import configure_logging
from abuseguard.domain.enforcement import DetectorKind
from abuseguard.persistence.db import get_database
from abuseguard.services.scheduler import (
    run_detection_loop,
    run_detector_scan,
    run_metrics_prune_cycle,
    run_notification_retry_cycle,
    run_notification_retry_loop,
    run_quota_enforcement_cycle,
    run_quota_enforcement_loop,
)


logger = logging.getLogger(__name__)


async def scan_detector(ctx, detector: str) -> dict:
    # On-demand scan enqueued by operators; the periodic loops cover the regular cadence.
    return await run_detector_scan(get_database(), DetectorKind(detector))


async def retry_notifications(ctx) -> dict:
    summary = await run_notification_retry_cycle(get_database())
    return summary.to_dict()


async def enforce_quota_abuse(ctx) -> int:
    return await run_quota_enforcement_cycle(get_database())


async def prune_metrics(ctx) -> dict:
    return await run_metrics_prune_cycle(get_database())


async def _startup(ctx) -> None:
    # Periodic enforcement keeps running even when no jobs are enqueued.
    configure_logging()
    database = get_database()
    stop_event = asyncio.Event()
    ctx["stop_event"] = stop_event
    ctx["loop_tasks"] = [
        asyncio.create_task(run_detection_loop(database, stop_event=stop_event)),
        asyncio.create_task(run_notification_retry_loop(database, stop_event=stop_event)),
        asyncio.create_task(run_quota_enforcement_loop(database, stop_event=stop_event)),
    ]
    logger.info("enforcement_worker_started loops=%s", len(ctx["loop_tasks"]))


async def _shutdown(ctx) -> None:
    stop_event = ctx.get("stop_event")
    if stop_event is not None:
        stop_event.set()
    tasks = ctx.get("loop_tasks") or []
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await get_database().dispose()


class WorkerSettings:
    # arq reads worker configuration from class attributes.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.worker_queue_name
    max_tries = 1
    functions = [scan_detector, retry_notifications, enforce_quota_abuse]
    cron_jobs = [cron(prune_metrics, hour={3}, minute={15}, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown

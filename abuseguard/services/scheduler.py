from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from abuseguard.core.config import get_settings
from abuseguard.domain.enforcement import AUDIT_SCAN_COMPLETED, ActorType, DetectorKind
from abuseguard.persistence.db import Database
from abuseguard.services.audit import SYSTEM_ACTOR_ID, record_entry
from abuseguard.services.detection.engine import Detector, ScanSummary
from abuseguard.services.detection.error_rate import ErrorRateDetector
from abuseguard.services.detection.pattern import PatternDetector
from abuseguard.services.detection.spike import SpikeDetector
from abuseguard.services.metrics import MetricsStore
from abuseguard.services.notifications import NotificationManager, RetrySummary
from abuseguard.services.suspension import SuspensionManager


logger = logging.getLogger(__name__)


def build_detector(kind: DetectorKind, database: Database) -> Detector:
    if kind == DetectorKind.ERROR_RATE:
        return ErrorRateDetector(database)
    if kind == DetectorKind.SPIKE:
        return SpikeDetector(database)
    return PatternDetector(database)


def build_suspension_manager(database: Database) -> SuspensionManager:
    return SuspensionManager(database, notifications=NotificationManager(database))


async def run_detector_scan(
    database: Database,
    kind: DetectorKind,
    *,
    suspension: SuspensionManager | None = None,
    detector: Detector | None = None,
) -> dict[str, Any]:
    # One detector pass: scan, act on results, then record the job summary.
    scanner = detector or build_detector(kind, database)
    manager = suspension or build_suspension_manager(database)
    summary: ScanSummary = await scanner.scan_all_projects()
    handled = await manager.handle_detections(summary.detections)
    report = {**summary.to_dict(), "actions": handled.to_dict()}
    await record_entry(
        database=database,
        actor_id=SYSTEM_ACTOR_ID,
        actor_type=ActorType.SYSTEM,
        action=AUDIT_SCAN_COMPLETED,
        target_type="detection_scan",
        target_id=kind.value,
        metadata=report,
        best_effort=True,
    )
    return report


async def run_detection_cycle(
    database: Database,
    *,
    suspension: SuspensionManager | None = None,
) -> list[dict[str, Any]]:
    manager = suspension or build_suspension_manager(database)
    reports: list[dict[str, Any]] = []
    for kind in DetectorKind:
        try:
            reports.append(await run_detector_scan(database, kind, suspension=manager))
        except Exception:  # noqa: BLE001 - a broken detector must not stop the others.
            logger.exception("detection_cycle_detector_failed detector=%s", kind.value)
    return reports


async def run_notification_retry_cycle(database: Database) -> RetrySummary:
    return await NotificationManager(database).retry_failed_notifications()


async def run_quota_enforcement_cycle(database: Database) -> int:
    outcomes = await build_suspension_manager(database).enforce_quota_abuse()
    suspended = sum(1 for outcome in outcomes if outcome.created)
    logger.info("quota_enforcement_cycle suspended=%s", suspended)
    return suspended


async def run_metrics_prune_cycle(database: Database, *, retention_days: int | None = None) -> dict[str, int]:
    return await MetricsStore(database).prune(retention_days=retention_days)


async def _loop(
    name: str,
    interval_s: int,
    cycle: Callable[[], Awaitable[Any]],
    stop_event: asyncio.Event | None,
) -> None:
    interval = max(1, int(interval_s))
    while stop_event is None or not stop_event.is_set():
        started = datetime.now(timezone.utc)
        try:
            await cycle()
        except Exception:  # noqa: BLE001 - keep the loop alive and surface failures in logs.
            logger.exception("%s cycle failed started_at=%s", name, started.isoformat())
        if stop_event is None:
            await asyncio.sleep(interval)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


async def run_detection_loop(database: Database, *, stop_event: asyncio.Event | None = None) -> None:
    await _loop(
        "detection",
        get_settings().detection_interval_s,
        lambda: run_detection_cycle(database),
        stop_event,
    )


async def run_notification_retry_loop(database: Database, *, stop_event: asyncio.Event | None = None) -> None:
    await _loop(
        "notification_retry",
        get_settings().notification_retry_interval_s,
        lambda: run_notification_retry_cycle(database),
        stop_event,
    )


async def run_quota_enforcement_loop(database: Database, *, stop_event: asyncio.Event | None = None) -> None:
    await _loop(
        "quota_enforcement",
        get_settings().quota_enforcement_interval_s,
        lambda: run_quota_enforcement_cycle(database),
        stop_event,
    )

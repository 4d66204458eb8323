from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from abuseguard.domain.enforcement import (
    AUDIT_SCAN_COMPLETED,
    DetectorKind,
    PatternType,
    ProjectStatus,
    RecommendedAction,
    Severity,
)
from abuseguard.services.detection.error_rate import ErrorRateDetector
from abuseguard.services.detection.pattern import PatternDetector
from abuseguard.services.detection.spike import SpikeDetector
from abuseguard.services.metrics import MetricsStore
from abuseguard.services.notifications import NotificationManager
from abuseguard.services.scheduler import run_detector_scan
from abuseguard.services.suspension import SuspensionManager
from abuseguard.tests.utils.factories import RecordingChannel, count_audit, seed_project


class _BrokenForOneProject(ErrorRateDetector):
    def __init__(self, *args, broken_id: str, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.broken_id = broken_id

    async def check_project(self, session, project_id, now):
        if project_id == self.broken_id:
            raise RuntimeError("metrics shard unavailable")
        return await super().check_project(session, project_id, now)


class _SlowDetector(ErrorRateDetector):
    async def check_project(self, session, project_id, now):
        await asyncio.sleep(1)
        return await super().check_project(session, project_id, now)


async def _seed_spike(store: MetricsStore, project_id: str, now) -> None:
    # 24 hourly baseline samples of 20 requests, then 120 requests in the current hour.
    for hour in range(24):
        await store.record_sample(
            project_id,
            request_count=20,
            error_count=0,
            recorded_at=now - timedelta(hours=hour + 1.5),
        )
    await store.record_sample(project_id, request_count=120, error_count=0, recorded_at=now - timedelta(minutes=10))


@pytest.mark.asyncio
async def test_error_rate_scan_flags_noisy_project_only(database, clock) -> None:
    noisy = await seed_project(database)
    quiet = await seed_project(database)
    low_traffic = await seed_project(database)
    store = MetricsStore(database, time_provider=clock)
    await store.record_sample(noisy.id, request_count=1000, error_count=750, recorded_at=clock.now - timedelta(hours=1))
    await store.record_sample(quiet.id, request_count=1000, error_count=20, recorded_at=clock.now - timedelta(hours=1))
    await store.record_sample(low_traffic.id, request_count=50, error_count=50, recorded_at=clock.now)

    detector = ErrorRateDetector(database, time_provider=clock)
    summary = await detector.scan_all_projects()

    assert summary.projects_checked == 3
    assert summary.failures == []
    assert [result.project_id for result in summary.detections] == [noisy.id]
    detection = summary.detections[0]
    assert detection.metric_value == 75.0
    assert detection.severity == Severity.CRITICAL
    assert detection.recommended_action == RecommendedAction.INVESTIGATE
    assert summary.by_severity == {"warning": 0, "critical": 1, "severe": 0}


@pytest.mark.asyncio
async def test_one_failing_project_does_not_abort_the_batch(database, clock) -> None:
    healthy = await seed_project(database)
    broken = await seed_project(database)
    store = MetricsStore(database, time_provider=clock)
    await store.record_sample(healthy.id, request_count=200, error_count=190, recorded_at=clock.now)

    detector = _BrokenForOneProject(database, broken_id=broken.id, time_provider=clock)
    summary = await detector.scan_all_projects([healthy.id, broken.id])

    assert summary.projects_checked == 2
    assert [failure.project_id for failure in summary.failures] == [broken.id]
    assert "metrics shard unavailable" in summary.failures[0].message
    assert [result.project_id for result in summary.detections] == [healthy.id]
    assert summary.detections[0].severity == Severity.SEVERE


@pytest.mark.asyncio
async def test_slow_project_check_times_out_as_failure(database, clock) -> None:
    project = await seed_project(database)
    detector = _SlowDetector(database, time_provider=clock, check_timeout_s=0.05)
    summary = await detector.scan_all_projects([project.id])
    assert summary.projects_checked == 1
    assert len(summary.failures) == 1
    assert "timed out" in summary.failures[0].message


@pytest.mark.asyncio
async def test_explicit_zero_timeout_is_not_replaced_by_default(database, clock) -> None:
    project = await seed_project(database)
    detector = _SlowDetector(database, time_provider=clock, check_timeout_s=0, max_concurrency=0)
    summary = await detector.scan_all_projects([project.id])
    assert summary.projects_checked == 1
    assert len(summary.failures) == 1
    assert "timed out after 0.0s" in summary.failures[0].message


@pytest.mark.asyncio
async def test_spike_scan_detects_multiplier_over_baseline(database, clock) -> None:
    project = await seed_project(database)
    steady = await seed_project(database)
    store = MetricsStore(database, time_provider=clock)
    await _seed_spike(store, project.id, clock.now)
    for hour in range(25):
        await store.record_sample(steady.id, request_count=20, error_count=0, recorded_at=clock.now - timedelta(hours=hour, minutes=30))

    summary = await SpikeDetector(database, time_provider=clock).scan_all_projects()

    assert [result.project_id for result in summary.detections] == [project.id]
    detection = summary.detections[0]
    assert detection.metric_value == 6.0
    assert detection.severity == Severity.CRITICAL
    assert detection.recommended_action == RecommendedAction.SUSPEND
    assert detection.evidence["baseline_average"] == 20.0


@pytest.mark.asyncio
async def test_pattern_scan_counts_flagged_events_and_caps_evidence(database, clock) -> None:
    project = await seed_project(database)
    store = MetricsStore(database, time_provider=clock)
    for index in range(12):
        await store.record_access_event(
            project.id,
            PatternType.SQL_INJECTION,
            source_ip=f"203.0.113.{index}",
            detail="UNION-based injection",
            occurred_at=clock.now - timedelta(minutes=index + 1),
        )
    # Outside the 60 minute window.
    await store.record_access_event(
        project.id,
        PatternType.SQL_INJECTION,
        source_ip="198.51.100.1",
        occurred_at=clock.now - timedelta(hours=3),
    )

    summary = await PatternDetector(database, time_provider=clock).scan_all_projects([project.id])

    assert len(summary.detections) == 1
    detection = summary.detections[0]
    assert detection.subject == PatternType.SQL_INJECTION.value
    assert detection.metric_value == 12.0
    assert detection.severity == Severity.CRITICAL
    assert detection.recommended_action == RecommendedAction.INVESTIGATE
    assert len(detection.evidence["source_ips"]) == 10
    assert "198.51.100.1" not in detection.evidence["source_ips"]


@pytest.mark.asyncio
async def test_detections_are_kept_as_history(database, clock) -> None:
    project = await seed_project(database)
    store = MetricsStore(database, time_provider=clock)
    await store.record_sample(project.id, request_count=500, error_count=300, recorded_at=clock.now)
    detector = ErrorRateDetector(database, time_provider=clock)
    await detector.scan_all_projects()
    clock.advance(minutes=5)
    await detector.scan_all_projects()

    history = await detector.get_history(project.id)
    assert len(history) == 2
    assert history[0].detected_at > history[1].detected_at
    assert history[0].severity == Severity.WARNING.value

    disabled = ErrorRateDetector(database, time_provider=clock, persist_history=False)
    assert await disabled.get_history(project.id) == []


@pytest.mark.asyncio
async def test_scan_job_suspends_and_records_summary(database, clock) -> None:
    project = await seed_project(database)
    store = MetricsStore(database, time_provider=clock)
    await _seed_spike(store, project.id, clock.now)
    channel = RecordingChannel()
    manager = SuspensionManager(
        database,
        notifications=NotificationManager(database, channels=[channel], time_provider=clock),
        time_provider=clock,
    )

    report = await run_detector_scan(
        database,
        DetectorKind.SPIKE,
        suspension=manager,
        detector=SpikeDetector(database, time_provider=clock),
    )

    assert report["detections"] == 1
    assert report["actions"] == {"suspended": 1, "warned": 0, "failed": 0}
    status = await manager.get_status(project.id)
    assert status.status == ProjectStatus.SUSPENDED.value
    assert status.suspension_reason == "spike"
    assert await count_audit(database, AUDIT_SCAN_COMPLETED) == 1
    assert len(channel.sent) == 2

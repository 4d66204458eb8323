from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.core.errors import DetectionFailure
from abuseguard.domain.enforcement import (
    SEVERITY_RANK,
    DetectorKind,
    ProjectStatus,
    RecommendedAction,
    Severity,
)
from abuseguard.domain.models import DetectionRecord, Project
from abuseguard.persistence.db import Database


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeverityBand:
    severity: Severity
    minimum: float


class ThresholdPolicy:
    """Ordered severity bands plus a severity -> action table.

    ``classify`` returns the highest band whose minimum is at or below the
    metric value, so a larger value can never map to a lower severity.
    """

    def __init__(
        self,
        bands: Iterable[SeverityBand],
        actions: Mapping[Severity, RecommendedAction],
    ) -> None:
        ordered = sorted(bands, key=lambda band: band.minimum)
        if not ordered:
            raise ValueError("at least one severity band is required")
        ranks = [SEVERITY_RANK[band.severity] for band in ordered]
        if ranks != sorted(ranks) or len(set(ranks)) != len(ranks):
            raise ValueError("severity bands must escalate with their thresholds")
        self.bands: tuple[SeverityBand, ...] = tuple(ordered)
        self.actions: dict[Severity, RecommendedAction] = dict(actions)

    @classmethod
    def from_thresholds(
        cls,
        thresholds: Sequence[float],
        actions: Mapping[str, str],
    ) -> "ThresholdPolicy":
        # Build from [warning, critical, severe] minimums and a string action table.
        severities = (Severity.WARNING, Severity.CRITICAL, Severity.SEVERE)
        if len(thresholds) != len(severities):
            raise ValueError("expected warning, critical, and severe thresholds")
        bands = [SeverityBand(severity, float(minimum)) for severity, minimum in zip(severities, thresholds)]
        action_table = {Severity(key.lower()): RecommendedAction(value.lower()) for key, value in actions.items()}
        return cls(bands, action_table)

    @property
    def lowest_threshold(self) -> float:
        return self.bands[0].minimum

    def classify(self, value: float) -> Severity | None:
        matched: Severity | None = None
        for band in self.bands:
            if value >= band.minimum:
                matched = band.severity
        return matched

    def action_for(self, severity: Severity | None) -> RecommendedAction:
        if severity is None:
            return RecommendedAction.NONE
        return self.actions.get(severity, RecommendedAction.NONE)


@dataclass(frozen=True)
class DetectionResult:
    project_id: str
    detector: DetectorKind
    detected: bool
    metric_value: float
    severity: Severity | None
    recommended_action: RecommendedAction
    detected_at: datetime
    details: str
    subject: str | None = None
    evidence: dict[str, Any] = field(default_factory=dict)

    @property
    def actionable(self) -> bool:
        return self.detected and self.recommended_action != RecommendedAction.NONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "detector": self.detector.value,
            "detected": self.detected,
            "metric_value": self.metric_value,
            "severity": self.severity.value if self.severity else None,
            "recommended_action": self.recommended_action.value,
            "detected_at": self.detected_at.isoformat(),
            "details": self.details,
            "subject": self.subject,
            "evidence": self.evidence,
        }


@dataclass(frozen=True)
class ProjectScanOutcome:
    """Per-project result of a scan: either results or the failure that isolated it."""

    project_id: str
    results: tuple[DetectionResult, ...] = ()
    error: DetectionFailure | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ScanSummary:
    detector: DetectorKind
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    projects_checked: int
    outcomes: tuple[ProjectScanOutcome, ...]

    @property
    def detections(self) -> list[DetectionResult]:
        return [result for outcome in self.outcomes for result in outcome.results if result.detected]

    @property
    def failures(self) -> list[DetectionFailure]:
        return [outcome.error for outcome in self.outcomes if outcome.error is not None]

    @property
    def by_severity(self) -> dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for result in self.detections:
            if result.severity is not None:
                counts[result.severity.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "detector": self.detector.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "projects_checked": self.projects_checked,
            "detections": len(self.detections),
            "failures": len(self.failures),
            "by_severity": self.by_severity,
        }


class Detector:
    """Shared scan loop for the spike, error-rate, and pattern detectors.

    Subclasses implement ``check_project``; the batch loop gives every project
    its own session and timeout and turns any exception into a
    ``DetectionFailure`` outcome instead of aborting the scan.
    """

    kind: DetectorKind

    def __init__(
        self,
        database: Database,
        *,
        time_provider: Callable[[], datetime] | None = None,
        check_timeout_s: float | None = None,
        max_concurrency: int | None = None,
        persist_history: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._database = database
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))
        self._check_timeout_s = float(
            settings.detection_check_timeout_s if check_timeout_s is None else check_timeout_s
        )
        self._max_concurrency = max(
            1, int(settings.detection_max_concurrency if max_concurrency is None else max_concurrency)
        )
        self._persist_history = (
            settings.detection_history_enabled if persist_history is None else persist_history
        )

    def now(self) -> datetime:
        return self._time_provider()

    async def check_project(
        self,
        session: AsyncSession,
        project_id: str,
        now: datetime,
    ) -> list[DetectionResult]:
        raise NotImplementedError

    async def list_active_project_ids(self) -> list[str]:
        async with self._database.session() as session:
            result = await session.execute(
                select(Project.id)
                .where(Project.status == ProjectStatus.ACTIVE.value, Project.deleted_at.is_(None))
                .order_by(Project.id)
            )
            return [str(row[0]) for row in result.all()]

    async def run_check(self, project_id: str) -> list[DetectionResult]:
        # Single-project entry point used by admin endpoints.
        async with self._database.session() as session:
            return await self.check_project(session, project_id, self.now())

    async def _check_isolated(self, project_id: str, now: datetime) -> ProjectScanOutcome:
        try:
            async with self._database.session() as session:
                results = await asyncio.wait_for(
                    self.check_project(session, project_id, now),
                    timeout=self._check_timeout_s,
                )
        except asyncio.TimeoutError:
            logger.warning(
                "detection_project_timeout detector=%s project_id=%s timeout_s=%s",
                self.kind.value,
                project_id,
                self._check_timeout_s,
            )
            return ProjectScanOutcome(
                project_id=project_id,
                error=DetectionFailure(
                    f"check timed out after {self._check_timeout_s}s",
                    project_id=project_id,
                    detector=self.kind.value,
                ),
            )
        except Exception as exc:  # noqa: BLE001 - one project's failure must not abort the batch.
            logger.warning(
                "detection_project_failed detector=%s project_id=%s",
                self.kind.value,
                project_id,
                exc_info=exc,
            )
            return ProjectScanOutcome(
                project_id=project_id,
                error=DetectionFailure(str(exc) or type(exc).__name__, project_id=project_id, detector=self.kind.value),
            )
        return ProjectScanOutcome(project_id=project_id, results=tuple(results))

    async def scan_all_projects(self, project_ids: Sequence[str] | None = None) -> ScanSummary:
        started_at = self.now()
        started = time.monotonic()
        ids = list(project_ids) if project_ids is not None else await self.list_active_project_ids()
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(project_id: str) -> ProjectScanOutcome:
            async with semaphore:
                return await self._check_isolated(project_id, started_at)

        outcomes = await asyncio.gather(*(_bounded(project_id) for project_id in ids))
        summary = ScanSummary(
            detector=self.kind,
            started_at=started_at,
            completed_at=self.now(),
            duration_ms=int((time.monotonic() - started) * 1000),
            projects_checked=len(ids),
            outcomes=tuple(outcomes),
        )
        if self._persist_history and summary.detections:
            await self.save_history(summary.detections)
        logger.info(
            "detection_scan_completed detector=%s projects_checked=%s detections=%s failures=%s duration_ms=%s",
            self.kind.value,
            summary.projects_checked,
            len(summary.detections),
            len(summary.failures),
            summary.duration_ms,
        )
        return summary

    async def save_history(self, results: Sequence[DetectionResult]) -> int:
        rows = [
            DetectionRecord(
                project_id=result.project_id,
                detector=result.detector.value,
                subject=result.subject,
                metric_value=float(result.metric_value),
                severity=result.severity.value if result.severity else "none",
                recommended_action=result.recommended_action.value,
                details=result.details,
                evidence_json=result.evidence or None,
                detected_at=result.detected_at,
            )
            for result in results
            if result.detected
        ]
        if not rows:
            return 0
        async with self._database.session() as session:
            session.add_all(rows)
            await session.commit()
        return len(rows)

    async def get_history(
        self,
        project_id: str,
        *,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[DetectionRecord]:
        # Returns an empty list when history persistence is disabled.
        if not self._persist_history:
            return []
        cutoff = since or (self.now() - timedelta(days=get_settings().detection_history_retention_days))
        async with self._database.session() as session:
            result = await session.execute(
                select(DetectionRecord)
                .where(
                    DetectionRecord.project_id == project_id,
                    DetectionRecord.detector == self.kind.value,
                    DetectionRecord.detected_at >= cutoff,
                )
                .order_by(DetectionRecord.detected_at.desc(), DetectionRecord.id.desc())
                .limit(max(1, int(limit)))
            )
            return list(result.scalars().all())


def not_detected(
    *,
    project_id: str,
    detector: DetectorKind,
    metric_value: float,
    now: datetime,
    details: str,
    subject: str | None = None,
) -> DetectionResult:
    return DetectionResult(
        project_id=project_id,
        detector=detector,
        detected=False,
        metric_value=metric_value,
        severity=None,
        recommended_action=RecommendedAction.NONE,
        detected_at=now,
        details=details,
        subject=subject,
    )

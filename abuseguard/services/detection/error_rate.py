from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.domain.enforcement import DetectorKind
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.metrics import window_totals
from abuseguard.services.detection.engine import (
    DetectionResult,
    Detector,
    ThresholdPolicy,
    not_detected,
)


def calculate_error_rate(total_requests: int, error_count: int) -> float:
    # Percentage rounded to two decimals; zero traffic is a zero rate.
    if total_requests <= 0:
        return 0.0
    return round(error_count / total_requests * 100.0, 2)


def default_error_rate_policy() -> ThresholdPolicy:
    settings = get_settings()
    return ThresholdPolicy.from_thresholds(
        [
            settings.error_rate_threshold_pct,
            settings.error_rate_critical_pct,
            settings.error_rate_severe_pct,
        ],
        settings.error_rate_actions,
    )


class ErrorRateDetector(Detector):
    kind = DetectorKind.ERROR_RATE

    def __init__(
        self,
        database: Database,
        *,
        policy: ThresholdPolicy | None = None,
        window: timedelta | None = None,
        min_requests: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(database, **kwargs)
        settings = get_settings()
        self.policy = policy or default_error_rate_policy()
        self.window = window or timedelta(hours=settings.error_rate_window_hours)
        self.min_requests = int(settings.error_rate_min_requests if min_requests is None else min_requests)

    def evaluate(self, project_id: str, total_requests: int, error_count: int, now: datetime) -> DetectionResult:
        # Pure classification of one project's window totals.
        rate = calculate_error_rate(total_requests, error_count)
        if total_requests < self.min_requests:
            return not_detected(
                project_id=project_id,
                detector=self.kind,
                metric_value=rate,
                now=now,
                details=(
                    f"Insufficient traffic for error-rate detection: {total_requests} requests "
                    f"(minimum {self.min_requests})"
                ),
            )
        severity = self.policy.classify(rate)
        if severity is None:
            return not_detected(
                project_id=project_id,
                detector=self.kind,
                metric_value=rate,
                now=now,
                details=f"Error rate {rate}% is below threshold {self.policy.lowest_threshold}%",
            )
        return DetectionResult(
            project_id=project_id,
            detector=self.kind,
            detected=True,
            metric_value=rate,
            severity=severity,
            recommended_action=self.policy.action_for(severity),
            detected_at=now,
            details=(
                f"High error rate detected: {rate}% "
                f"({error_count} errors out of {total_requests} requests)"
            ),
            evidence={
                "total_requests": total_requests,
                "error_count": error_count,
                "window_hours": self.window.total_seconds() / 3600,
            },
        )

    async def check_project(
        self,
        session: AsyncSession,
        project_id: str,
        now: datetime,
    ) -> list[DetectionResult]:
        total_requests, error_count = await window_totals(
            session,
            project_id=project_id,
            start=now - self.window,
            end=now,
        )
        return [self.evaluate(project_id, total_requests, error_count, now)]

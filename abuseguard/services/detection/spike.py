from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.core.errors import ValidationError
from abuseguard.domain.enforcement import DetectorKind, RecommendedAction, Severity
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.metrics import window_totals
from abuseguard.services.detection.engine import (
    DetectionResult,
    Detector,
    ThresholdPolicy,
    not_detected,
)


# Suspending on anything below a doubling of traffic is considered unsafe.
MIN_SAFE_SUSPEND_MULTIPLIER = 2.0


@dataclass(frozen=True)
class SpikeConfig:
    thresholds: tuple[float, float, float]
    window: timedelta
    baseline: timedelta
    min_baseline_requests: int
    actions: dict[str, str] = field(default_factory=dict)

    def policy(self) -> ThresholdPolicy:
        return ThresholdPolicy.from_thresholds(self.thresholds, self.actions)


def spike_config_from_settings() -> SpikeConfig:
    settings = get_settings()
    return SpikeConfig(
        thresholds=(
            settings.spike_threshold_multiplier,
            settings.spike_critical_multiplier,
            settings.spike_severe_multiplier,
        ),
        window=timedelta(minutes=settings.spike_window_minutes),
        baseline=timedelta(hours=settings.spike_baseline_hours),
        min_baseline_requests=settings.spike_min_baseline_requests,
        actions=dict(settings.spike_actions),
    )


SPIKE_PRESETS: dict[str, SpikeConfig] = {
    "default": SpikeConfig(
        thresholds=(3.0, 5.0, 10.0),
        window=timedelta(hours=1),
        baseline=timedelta(hours=24),
        min_baseline_requests=10,
        actions={"warning": "warning", "critical": "suspend", "severe": "suspend"},
    ),
    "aggressive": SpikeConfig(
        thresholds=(2.0, 3.0, 5.0),
        window=timedelta(minutes=30),
        baseline=timedelta(hours=12),
        min_baseline_requests=5,
        actions={"warning": "warning", "critical": "suspend", "severe": "suspend"},
    ),
    "conservative": SpikeConfig(
        thresholds=(5.0, 10.0, 20.0),
        window=timedelta(hours=2),
        baseline=timedelta(hours=48),
        min_baseline_requests=20,
        actions={"warning": "warning", "critical": "investigate", "severe": "suspend"},
    ),
}


def validate_spike_config(config: SpikeConfig) -> list[str]:
    # Collect every problem so operators can fix a config in one pass.
    errors: list[str] = []
    for multiplier in config.thresholds:
        if multiplier < 1 or multiplier > 100:
            errors.append(f"spike multiplier {multiplier} must be between 1 and 100")
    if list(config.thresholds) != sorted(config.thresholds):
        errors.append("spike multipliers must increase from warning to severe")
    if config.window < timedelta(minutes=1) or config.window > timedelta(hours=24):
        errors.append("detection window must be between 1 minute and 24 hours")
    if config.baseline < timedelta(hours=1) or config.baseline > timedelta(days=30):
        errors.append("baseline period must be between 1 hour and 30 days")
    if config.baseline <= config.window:
        errors.append("baseline period must be longer than the detection window")
    if config.min_baseline_requests < 0:
        errors.append("minimum baseline requests must be non-negative")
    for severity, action in config.actions.items():
        try:
            Severity(severity.lower())
            RecommendedAction(action.lower())
        except ValueError:
            errors.append(f"invalid action mapping {severity}={action}")
    return errors


def is_safe_spike_config(config: SpikeConfig) -> bool:
    # A suspend action on a barely-elevated band would suspend on normal growth.
    if validate_spike_config(config):
        return False
    severities = (Severity.WARNING, Severity.CRITICAL, Severity.SEVERE)
    for severity, multiplier in zip(severities, config.thresholds):
        action = config.actions.get(severity.value, RecommendedAction.NONE.value)
        if action == RecommendedAction.SUSPEND.value and multiplier < MIN_SAFE_SUSPEND_MULTIPLIER:
            return False
    return True


class SpikeDetector(Detector):
    kind = DetectorKind.SPIKE

    def __init__(self, database: Database, *, config: SpikeConfig | None = None, **kwargs: Any) -> None:
        super().__init__(database, **kwargs)
        self.config = config or spike_config_from_settings()
        errors = validate_spike_config(self.config)
        if errors:
            raise ValidationError("Invalid spike detection config", details={"errors": errors})
        self.policy = self.config.policy()

    def evaluate(
        self,
        project_id: str,
        current_requests: int,
        baseline_requests: int,
        now: datetime,
    ) -> DetectionResult:
        windows_in_baseline = self.config.baseline / self.config.window
        average = baseline_requests / windows_in_baseline if windows_in_baseline > 0 else 0.0
        if average < self.config.min_baseline_requests or average <= 0:
            return not_detected(
                project_id=project_id,
                detector=self.kind,
                metric_value=0.0,
                now=now,
                details=(
                    f"Insufficient baseline for spike detection: {average:.2f} average requests per window "
                    f"(minimum {self.config.min_baseline_requests})"
                ),
            )
        multiplier = round(current_requests / average, 2)
        severity = self.policy.classify(multiplier)
        if severity is None:
            return not_detected(
                project_id=project_id,
                detector=self.kind,
                metric_value=multiplier,
                now=now,
                details=f"Traffic at {multiplier}x baseline is below the spike threshold",
            )
        return DetectionResult(
            project_id=project_id,
            detector=self.kind,
            detected=True,
            metric_value=multiplier,
            severity=severity,
            recommended_action=self.policy.action_for(severity),
            detected_at=now,
            details=(
                f"Usage spike detected: {current_requests} requests in the current window, "
                f"{multiplier}x the baseline average of {average:.2f}"
            ),
            evidence={
                "current_requests": current_requests,
                "baseline_average": round(average, 2),
                "window_minutes": self.config.window.total_seconds() / 60,
            },
        )

    async def check_project(
        self,
        session: AsyncSession,
        project_id: str,
        now: datetime,
    ) -> list[DetectionResult]:
        window_start = now - self.config.window
        current_requests, _ = await window_totals(session, project_id=project_id, start=window_start, end=now)
        baseline_requests, _ = await window_totals(
            session,
            project_id=project_id,
            start=window_start - self.config.baseline,
            end=window_start,
        )
        return [self.evaluate(project_id, current_requests, baseline_requests, now)]

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from abuseguard.core.errors import ValidationError
from abuseguard.domain.enforcement import RecommendedAction, Severity
from abuseguard.services.detection.spike import (
    SPIKE_PRESETS,
    SpikeDetector,
    is_safe_spike_config,
    validate_spike_config,
)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_presets_are_valid_and_safe() -> None:
    for name, config in SPIKE_PRESETS.items():
        assert validate_spike_config(config) == [], name
        assert is_safe_spike_config(config), name


def test_validation_collects_every_problem() -> None:
    config = replace(
        SPIKE_PRESETS["default"],
        thresholds=(0.5, 5.0, 150.0),
        window=timedelta(hours=30),
        baseline=timedelta(hours=2),
        min_baseline_requests=-1,
    )
    errors = validate_spike_config(config)
    assert any("0.5" in error for error in errors)
    assert any("150.0" in error for error in errors)
    assert any("detection window" in error for error in errors)
    assert any("longer than the detection window" in error for error in errors)
    assert any("non-negative" in error for error in errors)


def test_suspend_below_doubling_is_unsafe() -> None:
    config = replace(
        SPIKE_PRESETS["default"],
        thresholds=(1.5, 5.0, 10.0),
        actions={"warning": "suspend", "critical": "suspend", "severe": "suspend"},
    )
    assert validate_spike_config(config) == []
    assert is_safe_spike_config(config) is False


def test_detector_rejects_invalid_config() -> None:
    config = replace(SPIKE_PRESETS["default"], baseline=timedelta(minutes=30))
    with pytest.raises(ValidationError):
        SpikeDetector(database=None, config=config)  # type: ignore[arg-type]


def test_spike_multiplier_against_baseline_average() -> None:
    detector = SpikeDetector(database=None, config=SPIKE_PRESETS["default"])  # type: ignore[arg-type]
    # 24 baseline windows averaging 20 requests; 120 in the current window is 6x.
    result = detector.evaluate("proj-1", current_requests=120, baseline_requests=480, now=NOW)
    assert result.detected is True
    assert result.metric_value == 6.0
    assert result.severity == Severity.CRITICAL
    assert result.recommended_action == RecommendedAction.SUSPEND


def test_spike_needs_minimum_baseline() -> None:
    detector = SpikeDetector(database=None, config=SPIKE_PRESETS["default"])  # type: ignore[arg-type]
    result = detector.evaluate("proj-1", current_requests=5000, baseline_requests=100, now=NOW)
    assert result.detected is False
    assert "Insufficient baseline" in result.details

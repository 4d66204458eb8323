from __future__ import annotations

from datetime import datetime, timezone

import pytest

from abuseguard.domain.enforcement import RecommendedAction, Severity
from abuseguard.services.detection.engine import SeverityBand, ThresholdPolicy
from abuseguard.services.detection.error_rate import ErrorRateDetector, calculate_error_rate


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

ACTIONS = {"warning": "warning", "critical": "investigate", "severe": "suspend"}


def test_calculate_error_rate_rounds_to_two_decimals() -> None:
    assert calculate_error_rate(300, 100) == 33.33
    assert calculate_error_rate(200, 120) == 60.0


def test_calculate_error_rate_zero_traffic_is_zero() -> None:
    assert calculate_error_rate(0, 0) == 0.0
    assert calculate_error_rate(-5, 3) == 0.0


def test_policy_classifies_highest_matching_band() -> None:
    policy = ThresholdPolicy.from_thresholds([50, 70, 90], ACTIONS)
    assert policy.classify(49.99) is None
    assert policy.classify(50) == Severity.WARNING
    assert policy.classify(70) == Severity.CRITICAL
    assert policy.classify(89.99) == Severity.CRITICAL
    assert policy.classify(100) == Severity.SEVERE


def test_policy_severity_is_monotonic_in_metric() -> None:
    policy = ThresholdPolicy.from_thresholds([3, 10, 25], ACTIONS)
    rank = {None: 0, Severity.WARNING: 1, Severity.CRITICAL: 2, Severity.SEVERE: 3}
    previous = 0
    for value in range(0, 40):
        current = rank[policy.classify(value)]
        assert current >= previous
        previous = current


def test_policy_maps_severity_to_action() -> None:
    policy = ThresholdPolicy.from_thresholds([3, 10, 25], ACTIONS)
    assert policy.action_for(None) == RecommendedAction.NONE
    assert policy.action_for(Severity.WARNING) == RecommendedAction.WARNING
    assert policy.action_for(Severity.SEVERE) == RecommendedAction.SUSPEND


def test_policy_rejects_bands_that_do_not_escalate() -> None:
    with pytest.raises(ValueError):
        ThresholdPolicy(
            [SeverityBand(Severity.SEVERE, 10), SeverityBand(Severity.WARNING, 50)],
            {},
        )
    with pytest.raises(ValueError):
        ThresholdPolicy.from_thresholds([50, 70], ACTIONS)


def test_error_rate_below_sample_gate_is_not_detected() -> None:
    detector = ErrorRateDetector(database=None, min_requests=100)  # type: ignore[arg-type]
    result = detector.evaluate("proj-1", total_requests=99, error_count=99, now=NOW)
    assert result.detected is False
    assert result.severity is None
    assert result.recommended_action == RecommendedAction.NONE


def test_error_rate_detection_details_and_action() -> None:
    detector = ErrorRateDetector(database=None)  # type: ignore[arg-type]
    result = detector.evaluate("proj-1", total_requests=1000, error_count=750, now=NOW)
    assert result.detected is True
    assert result.metric_value == 75.0
    assert result.severity == Severity.CRITICAL
    assert result.recommended_action == RecommendedAction.INVESTIGATE
    assert result.details == "High error rate detected: 75.0% (750 errors out of 1000 requests)"


def test_error_rate_below_threshold_is_not_detected() -> None:
    detector = ErrorRateDetector(database=None)  # type: ignore[arg-type]
    result = detector.evaluate("proj-1", total_requests=1000, error_count=100, now=NOW)
    assert result.detected is False
    assert result.metric_value == 10.0

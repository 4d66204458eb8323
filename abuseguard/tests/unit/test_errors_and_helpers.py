from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from abuseguard.core.errors import (
    ErrorKind,
    ProjectSuspendedError,
    QuotaExceededError,
    RateLimitedError,
    ValidationError,
)
from abuseguard.domain.enforcement import OverrideAction
from abuseguard.services.auth.api_keys import generate_api_key, hash_api_key, normalize_role, role_allows
from abuseguard.services.audit import sanitize_metadata
from abuseguard.services.notifications import retry_backoff_ms
from abuseguard.services.overrides import OverrideRequest, clamp_history_limit, parse_override_request
from abuseguard.services.quota import period_start, validate_cap_values
from abuseguard.services.rate_limit import RateLimitDecision, extract_client_ip


def test_rate_limited_error_carries_retry_hint() -> None:
    reset_at = datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)
    exc = RateLimitedError("slow down", reset_at=reset_at, retry_after_seconds=90, limit=10)
    assert exc.kind == ErrorKind.RATE_LIMITED
    assert exc.status_code == 429
    detail = exc.to_detail()
    assert detail["code"] == "RATE_LIMITED"
    assert detail["retry_after_s"] == 90
    assert detail["reset_at"] == reset_at.isoformat()


def test_quota_and_suspension_errors_have_distinct_codes() -> None:
    quota = QuotaExceededError("over", project_id="p", resource="storage", limit=5, used=5)
    suspended = ProjectSuspendedError("blocked", project_id="p", status="suspended")
    assert quota.status_code == 429
    assert quota.details["remaining"] == 0
    assert suspended.status_code == 423
    assert suspended.kind == ErrorKind.PROJECT_SUSPENDED


def test_extract_client_ip_prefers_forwarded_first_hop() -> None:
    assert extract_client_ip({"x-forwarded-for": "203.0.113.9, 10.0.0.1"}) == "203.0.113.9"
    assert extract_client_ip({"cf-connecting-ip": "198.51.100.4"}) == "198.51.100.4"
    assert extract_client_ip({"x-real-ip": "192.0.2.1"}) == "192.0.2.1"
    assert extract_client_ip({}) == "0.0.0.0"


def test_rate_limit_headers_include_retry_after_only_when_denied() -> None:
    reset_at = datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)
    allowed = RateLimitDecision(True, 1, 10, 9, reset_at, 0)
    denied = RateLimitDecision(False, 11, 10, 0, reset_at, 120)
    assert "Retry-After" not in allowed.headers()
    assert denied.headers()["Retry-After"] == "120"
    assert denied.headers()["X-RateLimit-Reset"] == str(int(reset_at.timestamp()))


def test_backoff_grows_and_stays_within_jitter_bounds() -> None:
    first = retry_backoff_ms(delivery_id="d-1", attempt_no=1)
    third = retry_backoff_ms(delivery_id="d-1", attempt_no=3)
    assert 750 <= first <= 1250
    assert 3000 <= third <= 5000
    assert retry_backoff_ms(delivery_id="d-1", attempt_no=3) == third
    assert retry_backoff_ms(delivery_id="d-1", attempt_no=20) <= 60000


def test_sanitize_metadata_redacts_secrets() -> None:
    cleaned = sanitize_metadata(
        {"api_key": "abc", "nested": {"Authorization": "Bearer x", "ok": 1}, "at": datetime(2026, 1, 1)}
    )
    assert cleaned["api_key"] == "[REDACTED]"
    assert cleaned["nested"] == {"Authorization": "[REDACTED]", "ok": 1}
    assert cleaned["at"] == "2026-01-01T00:00:00"


def test_cap_validation_rejects_unknown_and_out_of_range() -> None:
    assert validate_cap_values({"storage": 500}) == {"storage": 500}
    with pytest.raises(ValidationError):
        validate_cap_values({"bandwidth": 5})
    with pytest.raises(ValidationError):
        validate_cap_values({"storage": -1})
    with pytest.raises(ValidationError):
        validate_cap_values({"storage": 1_000_001})
    with pytest.raises(ValidationError):
        validate_cap_values({})


def test_period_start_is_utc_midnight() -> None:
    now = datetime(2026, 3, 10, 23, 59, tzinfo=timezone.utc)
    assert period_start(now) == datetime(2026, 3, 10, tzinfo=timezone.utc)


def test_override_request_requires_caps_for_cap_actions() -> None:
    with pytest.raises(PydanticValidationError):
        OverrideRequest(action=OverrideAction.INCREASE_CAPS, reason="more headroom")
    with pytest.raises(PydanticValidationError):
        OverrideRequest(action=OverrideAction.BOTH, reason="x", new_caps={"storage": -5})
    request = OverrideRequest(action=OverrideAction.UNSUSPEND, reason="  false positive  ")
    assert request.reason == "false positive"


def test_override_request_rejects_caps_for_unsuspend() -> None:
    with pytest.raises(PydanticValidationError):
        OverrideRequest(action=OverrideAction.UNSUSPEND, reason="restore", new_caps={"storage": 500})
    with pytest.raises(ValidationError) as excinfo:
        parse_override_request({"action": "unsuspend", "reason": "restore", "newCaps": {"storage": 500}})
    assert excinfo.value.code == "INVALID_REQUEST"
    assert excinfo.value.details["errors"]


def test_parse_override_request_accepts_either_caps_spelling() -> None:
    camel = parse_override_request({"action": "increase_caps", "reason": "growth", "newCaps": {"storage": 500}})
    snake = parse_override_request({"action": "increase_caps", "reason": "growth", "new_caps": {"storage": 500}})
    assert camel.new_caps == snake.new_caps == {"storage": 500}
    with pytest.raises(ValidationError):
        parse_override_request(["not", "an", "object"])
    with pytest.raises(ValidationError):
        parse_override_request(None)


def test_override_request_rejects_blank_or_long_reason() -> None:
    with pytest.raises(PydanticValidationError):
        OverrideRequest(action=OverrideAction.UNSUSPEND, reason="   ")
    with pytest.raises(PydanticValidationError):
        OverrideRequest(action=OverrideAction.UNSUSPEND, reason="x" * 1001)
    with pytest.raises(PydanticValidationError):
        OverrideRequest(action=OverrideAction.UNSUSPEND, reason="ok", notes="n" * 1001)


def test_history_limit_is_clamped() -> None:
    assert clamp_history_limit(None) == 50
    assert clamp_history_limit(0) == 1
    assert clamp_history_limit(500) == 100


def test_api_key_roles_and_hashing() -> None:
    key_id, raw_key, prefix, key_hash = generate_api_key()
    assert raw_key.startswith(f"abg_{key_id}_")
    assert raw_key.startswith(prefix)
    assert hash_api_key(raw_key) == key_hash
    assert normalize_role(" Operator ") == "operator"
    assert role_allows(role="admin", minimum_role="operator")
    assert not role_allows(role="developer", minimum_role="operator")
    with pytest.raises(ValueError):
        normalize_role("viewer")

from __future__ import annotations

from datetime import timedelta

import pytest

from abuseguard.core.errors import QuotaExceededError, ValidationError
from abuseguard.domain.enforcement import DetectorKind, IdentifierType, RecommendedAction, Severity
from abuseguard.domain.models import DetectionRecord
from abuseguard.persistence.db import Database
from abuseguard.services.dashboard import build_abuse_dashboard
from abuseguard.services.quota import QuotaManager
from abuseguard.services.rate_limit import RateLimiter
from abuseguard.tests.utils.factories import seed_project, suspend_directly


async def _record_pattern(database: Database, project_id: str, detected_at, *, subject: str, severity: Severity) -> None:
    async with database.session() as session:
        session.add(
            DetectionRecord(
                project_id=project_id,
                detector=DetectorKind.PATTERN.value,
                subject=subject,
                metric_value=12.0,
                severity=severity.value,
                recommended_action=RecommendedAction.INVESTIGATE.value,
                details=f"{subject} pattern detected",
                detected_at=detected_at,
            )
        )
        await session.commit()


@pytest.mark.asyncio
async def test_dashboard_summarises_enforcement_activity(database, clock) -> None:
    busy = await seed_project(database, caps={"storage": 10})
    capped = await seed_project(database, caps={"storage": 0})
    suspended = await seed_project(database)
    quota = QuotaManager(database, time_provider=clock)
    await quota.enforce_cap(busy.id, "storage", 9)
    with pytest.raises(QuotaExceededError):
        await quota.enforce_cap(capped.id, "storage")
    await suspend_directly(database, suspended.id, clock)
    await RateLimiter(database, time_provider=clock).check(IdentifierType.IP, "203.0.113.1", limit=5, window_s=60)
    await _record_pattern(database, busy.id, clock.now - timedelta(hours=1), subject="sql_injection", severity=Severity.CRITICAL)
    await _record_pattern(database, busy.id, clock.now - timedelta(days=3), subject="auth_brute_force", severity=Severity.WARNING)

    dashboard = await build_abuse_dashboard(database, time_provider=clock)

    assert dashboard["time_range"] == "24h"
    assert dashboard["suspensions"] == {"total": 1, "active": 1, "by_reason": {"spike": 1}}
    assert dashboard["rate_limits"] == {"windows": 1, "by_type": {"ip": 1}}
    violations = dashboard["cap_violations"]["violations"]
    assert [(item["project_id"], item["resource"], item["denied"]) for item in violations] == [
        (capped.id, "storage", 1)
    ]
    approaching = dashboard["approaching_caps"]["projects"]
    assert [(item["project_id"], item["level"], item["ratio"]) for item in approaching] == [(busy.id, "critical", 0.9)]
    patterns = dashboard["suspicious_patterns"]
    assert patterns["total"] == 1
    assert patterns["by_type"] == {"sql_injection": 1}
    assert patterns["recent"][0]["severity"] == "critical"


@pytest.mark.asyncio
async def test_dashboard_time_range_widens_the_window(database, clock) -> None:
    project = await seed_project(database)
    await _record_pattern(database, project.id, clock.now - timedelta(days=3), subject="auth_brute_force", severity=Severity.WARNING)

    weekly = await build_abuse_dashboard(database, time_range="7d", time_provider=clock)

    assert weekly["suspicious_patterns"]["by_severity"] == {"warning": 1}
    assert weekly["start_time"] == (clock.now - timedelta(days=7)).isoformat()
    with pytest.raises(ValidationError):
        await build_abuse_dashboard(database, time_range="90d", time_provider=clock)

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from abuseguard.core.config import get_settings
from abuseguard.domain.enforcement import DetectorKind, PatternType, Severity
from abuseguard.persistence.db import Database
from abuseguard.persistence.repos.metrics import access_event_sources, count_access_events
from abuseguard.services.detection.engine import (
    DetectionResult,
    Detector,
    ThresholdPolicy,
    not_detected,
)


@dataclass(frozen=True)
class SqlSignature:
    pattern: re.Pattern[str]
    severity: Severity
    description: str


SQL_INJECTION_SIGNATURES: tuple[SqlSignature, ...] = (
    SqlSignature(
        re.compile(r"\bunion\b[\s/*]+(all[\s/*]+)?select\b", re.IGNORECASE),
        Severity.SEVERE,
        "UNION-based injection",
    ),
    SqlSignature(
        re.compile(r";\s*(drop|truncate|alter)\s+(table|database|schema)\b", re.IGNORECASE),
        Severity.SEVERE,
        "Stacked destructive statement",
    ),
    SqlSignature(
        re.compile(r"\b(pg_sleep|sleep|benchmark|waitfor\s+delay)\s*\(?", re.IGNORECASE),
        Severity.CRITICAL,
        "Time-based blind injection",
    ),
    SqlSignature(
        re.compile(r"['\"]\s*(or|and)\s+['\"]?\w+['\"]?\s*=\s*['\"]?\w+", re.IGNORECASE),
        Severity.CRITICAL,
        "Tautology in quoted input",
    ),
    SqlSignature(
        re.compile(r"\b(information_schema|pg_catalog|sqlite_master)\b", re.IGNORECASE),
        Severity.CRITICAL,
        "System catalog probing",
    ),
    SqlSignature(
        re.compile(r"(--|#|/\*)\s*$", re.MULTILINE),
        Severity.WARNING,
        "Trailing comment terminator",
    ),
)

_SIGNATURE_CONFIDENCE: dict[Severity, float] = {
    Severity.SEVERE: 0.95,
    Severity.CRITICAL: 0.8,
    Severity.WARNING: 0.6,
}


@dataclass(frozen=True)
class PatternMatch:
    matched: bool
    confidence: float
    description: str | None = None
    evidence: tuple[str, ...] = ()


def detect_sql_injection(text: str | None) -> PatternMatch:
    # Highest-confidence signature wins; every matching description is kept as evidence.
    if not text:
        return PatternMatch(matched=False, confidence=0.0)
    evidence: list[str] = []
    best: SqlSignature | None = None
    for signature in SQL_INJECTION_SIGNATURES:
        if signature.pattern.search(text):
            evidence.append(signature.description)
            if best is None or _SIGNATURE_CONFIDENCE[signature.severity] > _SIGNATURE_CONFIDENCE[best.severity]:
                best = signature
    if best is None:
        return PatternMatch(matched=False, confidence=0.0)
    return PatternMatch(
        matched=True,
        confidence=_SIGNATURE_CONFIDENCE[best.severity],
        description=best.description,
        evidence=tuple(evidence),
    )


@dataclass(frozen=True)
class PatternRule:
    pattern_type: PatternType
    enabled: bool
    policy: ThresholdPolicy
    window: timedelta


_PATTERN_LABELS: dict[PatternType, str] = {
    PatternType.SQL_INJECTION: "SQL injection attempts",
    PatternType.AUTH_BRUTE_FORCE: "failed authentication attempts",
    PatternType.RAPID_KEY_CREATION: "API keys created",
}


def default_pattern_rules() -> dict[PatternType, PatternRule]:
    settings = get_settings()
    window = timedelta(minutes=settings.pattern_window_minutes)
    configured = {
        PatternType.SQL_INJECTION: (
            settings.pattern_sql_injection_enabled,
            settings.pattern_sql_injection_bands,
        ),
        PatternType.AUTH_BRUTE_FORCE: (
            settings.pattern_auth_brute_force_enabled,
            settings.pattern_auth_brute_force_bands,
        ),
        PatternType.RAPID_KEY_CREATION: (
            settings.pattern_rapid_key_creation_enabled,
            settings.pattern_rapid_key_creation_bands,
        ),
    }
    return {
        pattern_type: PatternRule(
            pattern_type=pattern_type,
            enabled=enabled,
            policy=ThresholdPolicy.from_thresholds(bands, settings.pattern_actions),
            window=window,
        )
        for pattern_type, (enabled, bands) in configured.items()
    }


class PatternDetector(Detector):
    kind = DetectorKind.PATTERN

    def __init__(
        self,
        database: Database,
        *,
        rules: dict[PatternType, PatternRule] | None = None,
        max_evidence: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(database, **kwargs)
        self.rules = rules or default_pattern_rules()
        self.max_evidence = int(max_evidence or get_settings().pattern_max_evidence)

    def evaluate(
        self,
        project_id: str,
        rule: PatternRule,
        occurrences: int,
        now: datetime,
        sources: list[str] | None = None,
    ) -> DetectionResult:
        label = _PATTERN_LABELS[rule.pattern_type]
        severity = rule.policy.classify(occurrences)
        if severity is None:
            return not_detected(
                project_id=project_id,
                detector=self.kind,
                metric_value=float(occurrences),
                now=now,
                details=f"{occurrences} {label} (minimum {int(rule.policy.lowest_threshold)})",
                subject=rule.pattern_type.value,
            )
        return DetectionResult(
            project_id=project_id,
            detector=self.kind,
            detected=True,
            metric_value=float(occurrences),
            severity=severity,
            recommended_action=rule.policy.action_for(severity),
            detected_at=now,
            details=(
                f"Malicious pattern detected: {occurrences} {label} in the last "
                f"{int(rule.window.total_seconds() // 60)} minutes"
            ),
            subject=rule.pattern_type.value,
            evidence={"source_ips": list(sources or [])[: self.max_evidence]},
        )

    async def check_project(
        self,
        session: AsyncSession,
        project_id: str,
        now: datetime,
    ) -> list[DetectionResult]:
        results: list[DetectionResult] = []
        for rule in self.rules.values():
            if not rule.enabled:
                continue
            start = now - rule.window
            occurrences = await count_access_events(
                session,
                project_id=project_id,
                pattern_type=rule.pattern_type.value,
                start=start,
                end=now,
            )
            sources: list[str] = []
            if occurrences >= rule.policy.lowest_threshold:
                sources = await access_event_sources(
                    session,
                    project_id=project_id,
                    pattern_type=rule.pattern_type.value,
                    start=start,
                    end=now,
                    limit=self.max_evidence,
                )
            results.append(self.evaluate(project_id, rule, occurrences, now, sources))
        return results

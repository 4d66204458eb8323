from abuseguard.services.detection.engine import (
    DetectionResult,
    Detector,
    ProjectScanOutcome,
    ScanSummary,
    SeverityBand,
    ThresholdPolicy,
)
from abuseguard.services.detection.error_rate import (
    ErrorRateDetector,
    calculate_error_rate,
    default_error_rate_policy,
)
from abuseguard.services.detection.pattern import (
    PatternDetector,
    PatternMatch,
    PatternRule,
    default_pattern_rules,
    detect_sql_injection,
)
from abuseguard.services.detection.spike import (
    SPIKE_PRESETS,
    SpikeConfig,
    SpikeDetector,
    is_safe_spike_config,
    spike_config_from_settings,
    validate_spike_config,
)

from enum import Enum


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = (RunStatus.SUCCEEDED, RunStatus.FAILED)


class ErrorCode(str, Enum):
    CONTEXT_BUILD_ERROR = "CONTEXT_BUILD_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"  # LLM call failed, timed out or returned nothing
    VALIDATION_ERROR = "VALIDATION_ERROR"  # malformed or schema-invalid draft
    ARTIFACT_CREATION_FAILED = "ARTIFACT_CREATION_FAILED"
    COMPLETED_NO_RESULT = "COMPLETED_NO_RESULT"  # assigned by reconcile
    UNKNOWN_ERROR = "UNKNOWN_ERROR"  # assigned by reconcile
    STALE_RUN_TIMEOUT = "STALE_RUN_TIMEOUT"  # assigned by reconcile


class RiskLevel(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class ValidationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class FlagType(str, Enum):
    CONTRAINDICATION = "contraindication"
    PLAUSIBILITY = "plausibility"
    OUT_OF_BOUNDS = "out_of_bounds"
    SAFETY = "safety"


class ValidationStatus(str, Enum):
    PASS = "pass"
    FLAG = "flag"  # warnings/info only
    FAIL = "fail"  # at least one critical finding


class SafetySeverity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SafetyAction(str, Enum):
    PASS = "PASS"
    FLAG = "FLAG"
    BLOCK = "BLOCK"
    UNKNOWN = "UNKNOWN"


class SafetyCategory(str, Enum):
    CONSISTENCY = "consistency"
    MEDICAL_PLAUSIBILITY = "medical_plausibility"
    CONTRAINDICATION = "contraindication"
    TONE_APPROPRIATENESS = "tone_appropriateness"
    INFORMATION_QUALITY = "information_quality"
    OTHER = "other"

from .enums import (
    TERMINAL_STATUSES,
    ErrorCode,
    FlagType,
    RiskLevel,
    RunStatus,
    SafetyAction,
    SafetyCategory,
    SafetySeverity,
    ValidationSeverity,
    ValidationStatus,
)
from .domain import (
    ContextPack,
    ContextPackMetadata,
    DiagnosisResult,
    ErrorInfo,
    GeneratedSection,
    MedicalValidationResult,
    ReconcileActions,
    ReconcileOptions,
    ReconcileRunIds,
    ReconcileSummary,
    ReconcileTotals,
    SafetyCheckResult,
    SafetyFinding,
    SafetyMetadata,
    SafetyModelConfig,
    SectionValidationResult,
    TokenUsage,
    ValidationFinding,
    WorkerResult,
)

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import (
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


# ── Context pack ──────────────────────────────────────────────────────────


class ContextPackMetadata(BaseModel):
    inputs_hash: str
    context_version: str = "v1"
    generated_at: Optional[datetime] = None


class ContextPack(BaseModel):
    """Patient context bundle handed to the diagnosis prompt."""
    patient_id: str
    demographics: dict[str, Any] = Field(default_factory=dict)
    current_measures: dict[str, Any] = Field(default_factory=dict)
    anamnesis: dict[str, Any] = Field(default_factory=lambda: {"entries": []})
    funnel_runs: dict[str, Any] = Field(default_factory=lambda: {"runs": []})
    metadata: ContextPackMetadata


# ── Diagnosis output ──────────────────────────────────────────────────────


class DiagnosisResult(BaseModel):
    """Structured diagnosis draft, after JSON schema validation."""
    model_config = ConfigDict(extra="allow")

    summary: str
    findings: list[str]
    recommendations: list[str]
    risk_level: Optional[RiskLevel] = None
    confidence_score: Optional[float] = None


class ErrorInfo(BaseModel):
    code: ErrorCode
    message: str
    details: Optional[dict[str, Any]] = None


class WorkerResult(BaseModel):
    run_id: str
    status: RunStatus
    artifact_id: Optional[str] = None
    error: Optional[ErrorInfo] = None
    requires_review: Optional[bool] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED


# ── Medical validation (rules) ────────────────────────────────────────────


class GeneratedSection(BaseModel):
    """One generated content section plus the inputs it was drafted from."""
    section_key: str
    text: str
    signals: list[str] = Field(default_factory=list)
    scores: dict[str, float] = Field(default_factory=dict)


class ValidationFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_version: str
    flag_type: FlagType
    section_key: str
    severity: ValidationSeverity
    message: str
    context: dict[str, str | int | float | bool] = Field(default_factory=dict)


class SectionValidationResult(BaseModel):
    section_key: str
    passed: bool
    findings: list[ValidationFinding]
    max_severity: Optional[ValidationSeverity] = None


class MedicalValidationResult(BaseModel):
    validation_version: str = "v1"
    engine_version: str
    ruleset_hash: str
    overall_status: ValidationStatus
    overall_passed: bool
    section_results: list[SectionValidationResult]
    findings: list[ValidationFinding]
    rules_evaluated_count: int
    critical_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    error_code: Optional[str] = None
    validated_at: datetime


# ── Safety check (LLM) ────────────────────────────────────────────────────


class SafetyFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    finding_id: str
    category: SafetyCategory
    severity: SafetySeverity
    section_key: Optional[str] = None
    reason: str = Field(min_length=1, max_length=2000)
    suggested_action: SafetyAction
    context: Optional[dict[str, str | int | float | bool]] = None
    identified_at: datetime


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    total_tokens: int = Field(ge=0)


class SafetyModelConfig(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    provider: str = "anthropic"
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)


class SafetyMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    evaluation_time_ms: int = Field(ge=0)
    llm_call_count: int = Field(ge=0)
    sections_evaluated_count: int = Field(ge=0)
    token_usage: Optional[TokenUsage] = None
    fallback_used: bool
    warnings: list[str] = Field(default_factory=list)
    model_config_used: Optional[SafetyModelConfig] = None


class SafetyCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    safety_version: str = "v1"
    prompt_version: str
    safety_score: int = Field(ge=0, le=100)
    overall_severity: SafetySeverity
    recommended_action: SafetyAction
    findings: list[SafetyFinding]
    summary_reasoning: str = Field(default="", max_length=5000)
    evaluated_at: datetime
    metadata: SafetyMetadata


# ── Reconciliation ────────────────────────────────────────────────────────


class ReconcileOptions(BaseModel):
    dry_run: bool = True
    limit: int = Field(default=200, ge=1)
    retry: bool = True
    include_failed_without_error: bool = True
    backoff_ms: int = Field(default=750, ge=0)
    max_ids: int = Field(default=50, ge=0)
    stale_running_minutes: Optional[int] = Field(default=None, ge=1)


class ReconcileTotals(BaseModel):
    scanned: int = 0
    completed_missing_artifact: int = 0
    failed_missing_error: int = 0
    stale_running: int = 0


class ReconcileActions(BaseModel):
    retried: int = 0
    marked_failed: int = 0
    fixed_error_code: int = 0
    skipped: int = 0
    failed: int = 0


class ReconcileRunIds(BaseModel):
    retried: list[str] = Field(default_factory=list)
    marked_failed: list[str] = Field(default_factory=list)
    fixed_error_code: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class ReconcileSummary(BaseModel):
    dry_run: bool
    totals: ReconcileTotals = Field(default_factory=ReconcileTotals)
    actions: ReconcileActions = Field(default_factory=ReconcileActions)
    run_ids: ReconcileRunIds = Field(default_factory=ReconcileRunIds)

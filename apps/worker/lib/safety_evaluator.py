"""
LLM-based safety review of generated content (second validation layer).

``evaluate_safety`` never raises. When the model is unavailable or its answer
cannot be parsed, the result fails closed: action UNKNOWN, severity critical,
score 0, and ``metadata.fallback_used`` set.
"""
from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from apps.worker.lib.llm_client import LLMClient, LLMError, LLMResponse
from apps.worker.lib.prompts import SAFETY_PROMPT_VERSION, build_safety_prompts
from packages.shared.env import parse_int_env
from packages.shared.models.domain import (
    GeneratedSection,
    SafetyCheckResult,
    SafetyFinding,
    SafetyMetadata,
    SafetyModelConfig,
    TokenUsage,
)
from packages.shared.models.enums import SafetyAction, SafetyCategory, SafetySeverity
from packages.shared.utils.json_utils import JSONExtractionError, extract_json_object

logger = logging.getLogger(__name__)

SAFETY_MAX_TOKENS = parse_int_env("SAFETY_MAX_TOKENS", 4096)

_SEVERITY_ORDER = [
    SafetySeverity.NONE,
    SafetySeverity.LOW,
    SafetySeverity.MEDIUM,
    SafetySeverity.HIGH,
    SafetySeverity.CRITICAL,
]

_SCORE_PENALTY = {
    SafetySeverity.CRITICAL: 40,
    SafetySeverity.HIGH: 25,
    SafetySeverity.MEDIUM: 15,
    SafetySeverity.LOW: 5,
    SafetySeverity.NONE: 0,
}


# ── Model answer shape ────────────────────────────────────────────────────


class _AssessedFinding(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category: SafetyCategory = SafetyCategory.OTHER
    severity: SafetySeverity
    section_key: Optional[str] = Field(default=None, alias="sectionKey")
    reason: str = Field(min_length=1, max_length=2000)
    suggested_action: SafetyAction = Field(alias="suggestedAction")


class _Assessment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    safety_score: int = Field(alias="safetyScore", ge=0, le=100)
    overall_severity: SafetySeverity = Field(alias="overallSeverity")
    recommended_action: SafetyAction = Field(alias="recommendedAction")
    findings: list[_AssessedFinding] = Field(default_factory=list)
    summary_reasoning: str = Field(default="", alias="summaryReasoning", max_length=5000)


# ── Evaluation ────────────────────────────────────────────────────────────


def _elapsed_ms(start: float) -> int:
    return max(0, int((time.monotonic() - start) * 1000))


def _token_usage(response: LLMResponse) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=response.prompt_tokens,
        completion_tokens=response.completion_tokens,
        total_tokens=response.total_tokens,
    )


def _fallback_result(
    reason: str,
    *,
    warning: str,
    start: float,
    sections_count: int,
    llm_call_count: int,
    model_config: SafetyModelConfig,
    prompt_version: str,
    token_usage: Optional[TokenUsage] = None,
) -> SafetyCheckResult:
    now = datetime.now(timezone.utc)
    finding = SafetyFinding(
        finding_id=str(uuid.uuid4()),
        category=SafetyCategory.OTHER,
        severity=SafetySeverity.CRITICAL,
        reason=reason[:2000],
        suggested_action=SafetyAction.UNKNOWN,
        identified_at=now,
    )
    return SafetyCheckResult(
        prompt_version=prompt_version,
        safety_score=0,
        overall_severity=SafetySeverity.CRITICAL,
        recommended_action=SafetyAction.UNKNOWN,
        findings=[finding],
        summary_reasoning="Safety check could not be completed. Manual review required.",
        evaluated_at=now,
        metadata=SafetyMetadata(
            evaluation_time_ms=_elapsed_ms(start),
            llm_call_count=llm_call_count,
            sections_evaluated_count=sections_count,
            token_usage=token_usage,
            fallback_used=True,
            warnings=[warning[:2000]],
            model_config_used=model_config,
        ),
    )


def evaluate_safety(
    sections: list[GeneratedSection],
    *,
    llm: Optional[LLMClient],
    prompt_version: str = SAFETY_PROMPT_VERSION,
    model_config: Optional[SafetyModelConfig] = None,
) -> SafetyCheckResult:
    """Review *sections* with the LLM. Always returns a result."""
    start = time.monotonic()
    config = model_config or SafetyModelConfig(
        model=getattr(llm, "model", None),
        temperature=0.0,
        max_tokens=SAFETY_MAX_TOKENS,
    )
    common = dict(
        start=start,
        sections_count=len(sections),
        model_config=config,
        prompt_version=prompt_version,
    )

    if llm is None:
        message = "LLM client not configured (missing API key)"
        return _fallback_result(
            f"LLM safety check unavailable: {message}",
            warning=f"LLM call failed: {message}",
            llm_call_count=0,
            **common,
        )

    try:
        system_prompt, user_prompt = build_safety_prompts(sections)
        try:
            response = llm.complete(
                system_prompt,
                user_prompt,
                max_tokens=config.max_tokens or SAFETY_MAX_TOKENS,
                temperature=config.temperature if config.temperature is not None else 0.0,
            )
        except LLMError as exc:
            logger.warning(f"Safety check LLM call failed: {exc}")
            return _fallback_result(
                f"LLM safety check unavailable: {exc}",
                warning=f"LLM call failed: {exc}",
                llm_call_count=0,
                **common,
            )

        usage = _token_usage(response)
        try:
            assessment = _Assessment.model_validate(extract_json_object(response.text))
        except (JSONExtractionError, ValidationError) as exc:
            logger.warning(f"Safety check response unparseable: {type(exc).__name__}")
            return _fallback_result(
                f"Failed to parse safety response: {exc}",
                warning=f"Failed to parse LLM response: {exc}",
                llm_call_count=1,
                token_usage=usage,
                **common,
            )

        now = datetime.now(timezone.utc)
        findings = [
            SafetyFinding(
                finding_id=str(uuid.uuid4()),
                category=f.category,
                severity=f.severity,
                section_key=f.section_key,
                reason=f.reason,
                suggested_action=f.suggested_action,
                identified_at=now,
            )
            for f in assessment.findings
        ]
        return SafetyCheckResult(
            prompt_version=prompt_version,
            safety_score=assessment.safety_score,
            overall_severity=assessment.overall_severity,
            recommended_action=assessment.recommended_action,
            findings=findings,
            summary_reasoning=assessment.summary_reasoning,
            evaluated_at=now,
            metadata=SafetyMetadata(
                evaluation_time_ms=_elapsed_ms(start),
                llm_call_count=1,
                sections_evaluated_count=len(sections),
                token_usage=usage,
                fallback_used=False,
                model_config_used=config,
            ),
        )
    except Exception as exc:
        logger.exception("Unexpected error during safety evaluation")
        return _fallback_result(
            f"LLM safety check unavailable: {exc}",
            warning=f"Unexpected evaluation error: {type(exc).__name__}",
            llm_call_count=0,
            **common,
        )


# ── Helpers ───────────────────────────────────────────────────────────────


def is_safety_check_passing(result: SafetyCheckResult) -> bool:
    return result.recommended_action == SafetyAction.PASS


def requires_review(result: SafetyCheckResult) -> bool:
    return result.recommended_action in (SafetyAction.BLOCK, SafetyAction.UNKNOWN)


def determine_action(findings: list[SafetyFinding]) -> SafetyAction:
    severities = {f.severity for f in findings}
    if SafetySeverity.CRITICAL in severities or SafetySeverity.HIGH in severities:
        return SafetyAction.BLOCK
    if SafetySeverity.MEDIUM in severities:
        return SafetyAction.FLAG
    return SafetyAction.PASS


def calculate_safety_score(findings: list[SafetyFinding]) -> int:
    """100 is clean; each finding subtracts a severity-weighted penalty, floored at 0."""
    score = 100 - sum(_SCORE_PENALTY[f.severity] for f in findings)
    return max(0, score)


def get_max_severity(result: SafetyCheckResult) -> SafetySeverity:
    if not result.findings:
        return SafetySeverity.NONE
    return max((f.severity for f in result.findings), key=_SEVERITY_ORDER.index)


def get_findings_for_section(result: SafetyCheckResult, section_key: str) -> list[SafetyFinding]:
    return [f for f in result.findings if f.section_key == section_key]


def get_findings_by_severity(result: SafetyCheckResult, severity: SafetySeverity) -> list[SafetyFinding]:
    return [f for f in result.findings if f.severity == severity]


def has_critical_findings(result: SafetyCheckResult) -> bool:
    return any(f.severity == SafetySeverity.CRITICAL for f in result.findings)

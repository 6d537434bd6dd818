"""
Step 5: Post-generation review gates.

Runs the deterministic rule engine and the LLM safety check over the draft.
Gates never fail a run; they only decide whether a clinician must review it.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Optional

from apps.worker.lib.llm_client import LLMClient
from apps.worker.lib.safety_evaluator import evaluate_safety, requires_review as safety_requires_review
from packages.shared.models.domain import DiagnosisResult, GeneratedSection
from packages.shared.validation.rule_evaluator import is_validation_passing, validate_sections
from packages.shared.validation.rule_registry import RuleRegistry

logger = logging.getLogger(__name__)


RISK_SCORE_MEASURES = ("riskScore", "risk_score")


def _risk_score(measures: Optional[dict[str, Any]]) -> Optional[float]:
    for key in RISK_SCORE_MEASURES:
        value = (measures or {}).get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            return float(value)
    return None


def diagnosis_to_sections(
    diagnosis: DiagnosisResult,
    measures: Optional[dict[str, Any]] = None,
) -> list[GeneratedSection]:
    """Split the draft into rule-checkable sections; the patient's risk score rides along as ``riskScore``."""
    signals = [diagnosis.risk_level.value] if diagnosis.risk_level else []
    scores: dict[str, float] = {}
    if diagnosis.confidence_score is not None:
        scores["confidence_score"] = diagnosis.confidence_score
    risk_score = _risk_score(measures)
    if risk_score is not None:
        scores["riskScore"] = risk_score
    return [
        GeneratedSection(section_key="summary", text=diagnosis.summary, signals=signals, scores=scores),
        GeneratedSection(section_key="findings", text="\n".join(diagnosis.findings), signals=signals, scores=scores),
        GeneratedSection(
            section_key="recommendations",
            text="\n".join(diagnosis.recommendations),
            signals=signals,
            scores=scores,
        ),
    ]


def run_review_gates(
    run_id: str,
    diagnosis: DiagnosisResult,
    *,
    llm: Optional[LLMClient],
    registry: Optional[RuleRegistry] = None,
    measures: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    sections = diagnosis_to_sections(diagnosis, measures)

    medical = validate_sections(sections, registry)
    safety = evaluate_safety(sections, llm=llm)

    needs_review = (not is_validation_passing(medical)) or safety_requires_review(safety)
    logger.info(
        f"[{run_id}] Review gates: rules={medical.overall_status.value} "
        f"({medical.critical_count} critical, {medical.warning_count} warning), "
        f"safety={safety.recommended_action.value}, requires_review={needs_review}"
    )
    return {
        "requires_review": needs_review,
        "medical_validation": medical.model_dump(mode="json"),
        "safety_check": safety.model_dump(mode="json"),
    }

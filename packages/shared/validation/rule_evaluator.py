"""
Deterministic medical rule evaluation over generated content sections.

Same sections + same registry always produce the same findings in the same
order. An empty rule set fails closed with NO_RULES_AVAILABLE.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Optional

from packages.shared.models.domain import (
    GeneratedSection,
    MedicalValidationResult,
    SectionValidationResult,
    ValidationFinding,
)
from packages.shared.models.enums import ValidationSeverity, ValidationStatus
from packages.shared.validation.rule_registry import (
    RULE_LOGIC_TYPES,
    ContraindicationLogic,
    KeywordLogic,
    OutOfBoundsLogic,
    PatternLogic,
    RuleRegistry,
    RuleRegistryError,
    ValidationRule,
    get_default_registry,
)

logger = logging.getLogger(__name__)

ENGINE_VERSION = "v1.0.0"
NO_RULES_AVAILABLE = "NO_RULES_AVAILABLE"

_SEVERITY_RANK = {
    ValidationSeverity.CRITICAL: 0,
    ValidationSeverity.WARNING: 1,
    ValidationSeverity.INFO: 2,
}


def _finding(rule: ValidationRule, section: GeneratedSection, message: str, **context) -> ValidationFinding:
    return ValidationFinding(
        rule_id=rule.rule_id,
        rule_version=rule.version,
        flag_type=rule.flag_type,
        section_key=section.section_key,
        severity=rule.severity,
        message=message,
        context=context,
    )


def _eval_contraindication(rule: ValidationRule, section: GeneratedSection) -> Optional[ValidationFinding]:
    logic: ContraindicationLogic = rule.logic
    signals = [s.lower() for s in section.signals]
    matched_signal = next(
        (rs for rs in logic.risk_signals if any(rs.lower() in s for s in signals)),
        None,
    )
    if matched_signal is None:
        return None
    text = section.text.lower()
    matched_pattern = next((p for p in logic.conflicting_patterns if p.lower() in text), None)
    if matched_pattern is None:
        return None
    return _finding(rule, section, logic.reason, signal=matched_signal, pattern=matched_pattern)


def _eval_pattern(rule: ValidationRule, section: GeneratedSection) -> Optional[ValidationFinding]:
    logic: PatternLogic = rule.logic
    match = re.search(logic.pattern, section.text, re.IGNORECASE)
    if logic.match_is_violation and match:
        return _finding(rule, section, logic.reason, matched=match.group(0)[:200])
    if not logic.match_is_violation and not match:
        return _finding(rule, section, logic.reason)
    return None


def _eval_keyword(rule: ValidationRule, section: GeneratedSection) -> Optional[ValidationFinding]:
    logic: KeywordLogic = rule.logic
    text = section.text.lower()
    present = [k for k in logic.keywords if k.lower() in text]
    if logic.presence_is_violation and present:
        return _finding(rule, section, logic.reason, keyword=present[0])
    if not logic.presence_is_violation and not present:
        return _finding(rule, section, logic.reason)
    return None


def _eval_out_of_bounds(rule: ValidationRule, section: GeneratedSection) -> Optional[ValidationFinding]:
    logic: OutOfBoundsLogic = rule.logic
    value = section.scores.get(logic.field)
    if value is None:
        return None
    too_low = logic.min_value is not None and value < logic.min_value
    too_high = logic.max_value is not None and value > logic.max_value
    if not (too_low or too_high):
        return None
    context: dict[str, float | str] = {"field": logic.field, "value": value}
    if logic.min_value is not None:
        context["min"] = logic.min_value
    if logic.max_value is not None:
        context["max"] = logic.max_value
    return _finding(rule, section, logic.reason, **context)


_EVALUATORS: dict[str, Callable[[ValidationRule, GeneratedSection], Optional[ValidationFinding]]] = {
    "contraindication": _eval_contraindication,
    "keyword": _eval_keyword,
    "out_of_bounds": _eval_out_of_bounds,
    "pattern": _eval_pattern,
}

if set(_EVALUATORS) != set(RULE_LOGIC_TYPES):
    raise RuleRegistryError(
        f"Rule logic types without an evaluator: {sorted(set(RULE_LOGIC_TYPES) - set(_EVALUATORS))}"
    )


def evaluate_rule(rule: ValidationRule, section: GeneratedSection) -> Optional[ValidationFinding]:
    """Return a finding if *rule* fires on *section*; inactive or off-target rules never fire."""
    if not rule.is_active or not rule.applies_to(section.section_key):
        return None
    return _EVALUATORS[rule.logic.type](rule, section)


def _finding_sort_key(f: ValidationFinding) -> tuple[str, int, str]:
    return (f.rule_id, _SEVERITY_RANK[f.severity], f.section_key)


def _max_severity(findings: Iterable[ValidationFinding]) -> Optional[ValidationSeverity]:
    ranked = sorted((f.severity for f in findings), key=lambda s: _SEVERITY_RANK[s])
    return ranked[0] if ranked else None


def evaluate_section(
    section: GeneratedSection,
    registry: RuleRegistry | Iterable[ValidationRule] | None = None,
) -> SectionValidationResult:
    """Apply the active rules targeting this section (or `all`)."""
    if registry is None:
        registry = get_default_registry()
    rules = registry.list_rules_by_section(section.section_key) if isinstance(registry, RuleRegistry) else registry
    findings = [f for f in (evaluate_rule(r, section) for r in rules) if f is not None]
    findings.sort(key=_finding_sort_key)
    return SectionValidationResult(
        section_key=section.section_key,
        passed=not any(f.severity == ValidationSeverity.CRITICAL for f in findings),
        findings=findings,
        max_severity=_max_severity(findings),
    )


def validate_sections(
    sections: list[GeneratedSection],
    registry: RuleRegistry | None = None,
    rule_ids: Optional[list[str]] = None,
) -> MedicalValidationResult:
    """
    Run every active rule (optionally restricted to *rule_ids*) over *sections*.

    overall_status is ``fail`` on any critical finding, ``flag`` on warnings
    only, ``pass`` otherwise. No applicable rules means ``fail`` with
    error_code NO_RULES_AVAILABLE.
    """
    if registry is None:
        registry = get_default_registry()
    rules = registry.list_active_rules()
    if rule_ids is not None:
        wanted = set(rule_ids)
        rules = [r for r in rules if r.rule_id in wanted]

    now = datetime.now(timezone.utc)
    if not rules:
        logger.warning("Medical validation has no active rules; failing closed")
        return MedicalValidationResult(
            engine_version=ENGINE_VERSION,
            ruleset_hash=registry.get_ruleset_hash(),
            overall_status=ValidationStatus.FAIL,
            overall_passed=False,
            section_results=[],
            findings=[],
            rules_evaluated_count=0,
            error_code=NO_RULES_AVAILABLE,
            validated_at=now,
        )

    section_results = [evaluate_section(s, rules) for s in sections]
    findings = sorted(
        (f for sr in section_results for f in sr.findings),
        key=_finding_sort_key,
    )
    critical = sum(1 for f in findings if f.severity == ValidationSeverity.CRITICAL)
    warning = sum(1 for f in findings if f.severity == ValidationSeverity.WARNING)
    info = sum(1 for f in findings if f.severity == ValidationSeverity.INFO)

    if critical:
        status = ValidationStatus.FAIL
    elif warning:
        status = ValidationStatus.FLAG
    else:
        status = ValidationStatus.PASS

    return MedicalValidationResult(
        engine_version=ENGINE_VERSION,
        ruleset_hash=registry.get_ruleset_hash(),
        overall_status=status,
        overall_passed=critical == 0,
        section_results=section_results,
        findings=findings,
        rules_evaluated_count=len(rules),
        critical_count=critical,
        warning_count=warning,
        info_count=info,
        validated_at=now,
    )


def get_critical_findings(result: MedicalValidationResult) -> list[ValidationFinding]:
    return [f for f in result.findings if f.severity == ValidationSeverity.CRITICAL]


def is_validation_passing(result: MedicalValidationResult) -> bool:
    return result.overall_passed and result.error_code is None

"""
Medical validation rule registry.

Rules are immutable and keyed by ``(rule_id, version)``. A rule is never edited
in place: a fix ships as a new version and the old version is deactivated.
Every listing is sorted by code point so that orderings and the ruleset hash
are reproducible across processes and platforms.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from types import MappingProxyType
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from packages.shared.models.enums import FlagType, ValidationSeverity
from packages.shared.utils.json_utils import canonical_json, sha256_hex

SECTION_ALL = "all"
DEFAULT_REGISTRY_VERSION = "v1.0.0"

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")


class RuleRegistryError(ValueError):
    """A malformed rule or an inconsistent rule table."""


# ── Rule logic variants ───────────────────────────────────────────────────


class ContraindicationLogic(BaseModel):
    """Fires when a risk signal co-occurs with a conflicting recommendation."""
    model_config = ConfigDict(frozen=True)

    type: Literal["contraindication"] = "contraindication"
    risk_signals: tuple[str, ...] = Field(min_length=1)
    conflicting_patterns: tuple[str, ...] = Field(min_length=1)
    reason: str


class PatternLogic(BaseModel):
    """Case-insensitive regex search over the section text."""
    model_config = ConfigDict(frozen=True)

    type: Literal["pattern"] = "pattern"
    pattern: str
    match_is_violation: bool = True
    reason: str

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value, re.IGNORECASE)
        except re.error as exc:
            raise ValueError(f"invalid pattern: {exc}") from exc
        return value


class KeywordLogic(BaseModel):
    """Case-insensitive keyword presence (or absence) check."""
    model_config = ConfigDict(frozen=True)

    type: Literal["keyword"] = "keyword"
    keywords: tuple[str, ...] = Field(min_length=1)
    presence_is_violation: bool = True
    reason: str


class OutOfBoundsLogic(BaseModel):
    """Inclusive numeric range check on ``section.scores[field]``."""
    model_config = ConfigDict(frozen=True)

    type: Literal["out_of_bounds"] = "out_of_bounds"
    field: str
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    reason: str

    @model_validator(mode="after")
    def _has_bounds(self) -> "OutOfBoundsLogic":
        if self.min_value is None and self.max_value is None:
            raise ValueError("out_of_bounds rule needs min_value or max_value")
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError("min_value must not exceed max_value")
        return self


RuleLogic = Annotated[
    Union[ContraindicationLogic, PatternLogic, KeywordLogic, OutOfBoundsLogic],
    Field(discriminator="type"),
]

RULE_LOGIC_TYPES: tuple[str, ...] = ("contraindication", "keyword", "out_of_bounds", "pattern")


class ValidationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(min_length=1, max_length=200)
    version: str
    description: str
    flag_type: FlagType
    severity: ValidationSeverity
    section_key: str = SECTION_ALL
    created_at: str
    is_active: bool = True
    logic: RuleLogic

    @field_validator("version")
    @classmethod
    def _semver(cls, value: str) -> str:
        if not _VERSION_RE.match(value):
            raise ValueError(f"version must look like v1.2.3, got {value!r}")
        return value

    @property
    def key(self) -> tuple[str, str]:
        return (self.rule_id, self.version)

    def applies_to(self, section_key: str) -> bool:
        return self.section_key == SECTION_ALL or self.section_key == section_key


def version_key(version: str) -> tuple[int, int, int]:
    match = _VERSION_RE.match(version)
    if not match:
        raise RuleRegistryError(f"Unparseable rule version: {version!r}")
    return (int(match.group(1)), int(match.group(2)), int(match.group(3)))


def _sort_key(rule: ValidationRule) -> tuple[str, tuple[int, int, int]]:
    return (rule.rule_id, version_key(rule.version))


# ── Registry ──────────────────────────────────────────────────────────────


class RuleRegistry:
    """Read-only table of validation rules. Derive new registries, never mutate."""

    def __init__(self, rules: Iterable[ValidationRule]):
        table: dict[tuple[str, str], ValidationRule] = {}
        for rule in rules:
            if rule.key in table:
                raise RuleRegistryError(f"Duplicate rule key: {rule.rule_id}@{rule.version}")
            table[rule.key] = rule

        ordered = sorted(table.values(), key=_sort_key)
        self._rules = MappingProxyType({rule.key: rule for rule in ordered})
        self._ordered: tuple[ValidationRule, ...] = tuple(ordered)
        self._active: tuple[ValidationRule, ...] = tuple(r for r in ordered if r.is_active)
        self._hash = sha256_hex(
            canonical_json([r.model_dump(mode="json") for r in self._active])
        )[:32]

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, key: object) -> bool:
        return key in self._rules

    def get_rule(self, rule_id: str, version: str) -> ValidationRule | None:
        return self._rules.get((rule_id, version))

    def has_rule(self, rule_id: str, version: str) -> bool:
        return (rule_id, version) in self._rules

    def get_latest_rule(self, rule_id: str) -> ValidationRule | None:
        """Highest semantic version for *rule_id*, active or not."""
        candidates = [r for r in self._ordered if r.rule_id == rule_id]
        if not candidates:
            return None
        return max(candidates, key=lambda r: version_key(r.version))

    def list_rules(self) -> list[ValidationRule]:
        return list(self._ordered)

    def list_active_rules(self) -> list[ValidationRule]:
        return list(self._active)

    def list_rules_by_section(self, section_key: str) -> list[ValidationRule]:
        """Active rules targeting *section_key* or ``all``."""
        return [r for r in self._active if r.applies_to(section_key)]

    def list_rule_ids(self) -> list[str]:
        return sorted({r.rule_id for r in self._ordered})

    def get_registry_version(self) -> str:
        """Version of the most recently created rule."""
        if not self._ordered:
            return DEFAULT_REGISTRY_VERSION
        latest = max(self._ordered, key=lambda r: (r.created_at, _sort_key(r)))
        return latest.version

    def get_ruleset_hash(self) -> str:
        """128-bit hex fingerprint of the active rule set."""
        return self._hash

    def with_rule(self, rule: ValidationRule) -> "RuleRegistry":
        """Return a new registry that also contains *rule*."""
        return RuleRegistry([*self._ordered, rule])

    def with_rule_deactivated(self, rule_id: str, version: str) -> "RuleRegistry":
        rule = self.get_rule(rule_id, version)
        if rule is None:
            raise RuleRegistryError(f"Unknown rule: {rule_id}@{version}")
        retired = rule.model_copy(update={"is_active": False})
        return RuleRegistry([retired if r.key == rule.key else r for r in self._ordered])


# ── Published rules ───────────────────────────────────────────────────────

_PUBLISHED_AT = "2026-01-04T06:00:00.000Z"

DEFAULT_RULES: tuple[ValidationRule, ...] = (
    ValidationRule(
        rule_id="contraindication-high-stress-vigorous-exercise",
        version="v1.0.0",
        description="Flag vigorous exercise recommendations for patients with critical stress levels",
        flag_type=FlagType.CONTRAINDICATION,
        severity=ValidationSeverity.WARNING,
        section_key="recommendations",
        created_at=_PUBLISHED_AT,
        logic=ContraindicationLogic(
            risk_signals=("critical", "high_stress", "stress_critical"),
            conflicting_patterns=("vigorous exercise", "intensive training", "high-intensity", "HIIT"),
            reason=(
                "Vigorous exercise may not be appropriate for patients with critical stress "
                "levels without medical clearance"
            ),
        ),
    ),
    ValidationRule(
        rule_id="contraindication-sleep-deprivation-stimulants",
        version="v1.0.0",
        description="Flag recommendations for stimulants when sleep deprivation is present",
        flag_type=FlagType.CONTRAINDICATION,
        severity=ValidationSeverity.WARNING,
        section_key="recommendations",
        created_at=_PUBLISHED_AT,
        logic=ContraindicationLogic(
            risk_signals=("poor_sleep", "sleep_deprivation", "insomnia"),
            conflicting_patterns=("caffeine", "energy drinks", "stimulant", "coffee"),
            reason="Stimulant recommendations may worsen sleep issues for patients with sleep deprivation",
        ),
    ),
    ValidationRule(
        rule_id="plausibility-contradictory-risk-level",
        version="v1.0.0",
        description="Check for contradictory risk level statements",
        flag_type=FlagType.PLAUSIBILITY,
        severity=ValidationSeverity.CRITICAL,
        created_at=_PUBLISHED_AT,
        logic=PatternLogic(
            pattern=(
                r"\b(low risk|minimal risk)\b.*\b(high risk|critical risk|severe)\b"
                r"|\b(high risk|critical risk)\b.*\b(low risk|minimal risk)\b"
            ),
            reason="Contradictory risk level statements detected in same section",
        ),
    ),
    ValidationRule(
        rule_id="plausibility-unrealistic-score-claims",
        version="v1.0.0",
        description="Flag unrealistic score improvement claims",
        flag_type=FlagType.PLAUSIBILITY,
        severity=ValidationSeverity.CRITICAL,
        created_at=_PUBLISHED_AT,
        logic=PatternLogic(
            pattern=r"(\b100%|\b(guarantee|cure|eliminate|completely resolve)\b)",
            reason="Unrealistic or absolute claims detected (guarantee, cure, 100% effectiveness)",
        ),
    ),
    ValidationRule(
        rule_id="out-of-bounds-risk-score",
        version="v1.0.0",
        description="Check for risk scores outside valid range (0-100)",
        flag_type=FlagType.OUT_OF_BOUNDS,
        severity=ValidationSeverity.CRITICAL,
        created_at=_PUBLISHED_AT,
        logic=OutOfBoundsLogic(
            field="riskScore",
            min_value=0,
            max_value=100,
            reason="Risk score is outside valid range (0-100)",
        ),
    ),
    ValidationRule(
        rule_id="safety-no-diagnosis-claims",
        version="v1.0.0",
        description="Ensure no patient-facing diagnosis claims are made",
        flag_type=FlagType.SAFETY,
        severity=ValidationSeverity.CRITICAL,
        created_at=_PUBLISHED_AT,
        logic=KeywordLogic(
            keywords=(
                "you have been diagnosed",
                "you are diagnosed with",
                "diagnosis:",
                "medical diagnosis",
                "clinical diagnosis",
            ),
            reason="Content contains diagnosis claims; drafts are informational until a clinician signs off",
        ),
    ),
    ValidationRule(
        rule_id="safety-no-medication-prescription",
        version="v1.0.0",
        description="Ensure no medication prescriptions are recommended",
        flag_type=FlagType.SAFETY,
        severity=ValidationSeverity.CRITICAL,
        section_key="recommendations",
        created_at=_PUBLISHED_AT,
        logic=KeywordLogic(
            keywords=("prescribe", "prescription for", "take medication", "start taking", "dosage of"),
            reason="Content contains medication prescription language; only licensed clinicians can prescribe",
        ),
    ),
)

_default_registry: RuleRegistry | None = None


def get_default_registry() -> RuleRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = RuleRegistry(DEFAULT_RULES)
    return _default_registry

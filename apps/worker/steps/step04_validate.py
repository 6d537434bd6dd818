"""
Step 4: Structural validation of the diagnosis draft.
"""
from __future__ import annotations

import logging
from typing import Any

from packages.shared.models.domain import DiagnosisResult
from packages.shared.schema_validator import validate_diagnosis_result

logger = logging.getLogger(__name__)

RAW_RESPONSE_LIMIT = 2000


class DiagnosisValidationError(Exception):
    """The draft violates the diagnosis result schema."""

    def __init__(self, errors: list[str], raw_response: str = ""):
        self.errors = errors
        self.raw_response = raw_response[:RAW_RESPONSE_LIMIT]
        super().__init__(f"Diagnosis result failed schema validation ({len(errors)} errors)")

    def to_details(self) -> dict[str, Any]:
        return {"validation_errors": self.errors, "raw_response": self.raw_response}


def validate_diagnosis(run_id: str, data: dict[str, Any], raw_response: str) -> DiagnosisResult:
    is_valid, errors = validate_diagnosis_result(data)
    if not is_valid:
        logger.warning(f"[{run_id}] Diagnosis draft failed validation: {len(errors)} errors")
        raise DiagnosisValidationError(errors, raw_response)
    return DiagnosisResult.model_validate(data)

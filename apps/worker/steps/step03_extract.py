"""
Step 3: Recover the JSON object from free-text model output.
"""
from __future__ import annotations

from typing import Any

from packages.shared.utils.json_utils import extract_json_object


def extract_diagnosis_json(text: str) -> dict[str, Any]:
    """Raises JSONExtractionError when no object can be parsed."""
    return extract_json_object(text)

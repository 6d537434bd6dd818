"""
JSON helpers for LLM output handling and stable hashing.
"""
from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)


class JSONExtractionError(ValueError):
    """Raised when no JSON object can be recovered from model output."""


def strip_code_fence(text: str) -> str:
    """Return the body of the first markdown code fence, or the stripped text."""
    content = (text or "").strip()
    match = _FENCE_RE.search(content)
    if match:
        return match.group(1).strip()
    return content


def find_balanced_object(text: str) -> str | None:
    """
    Return the first balanced ``{...}`` block in *text*.
    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:idx + 1]
        # Unbalanced from this opening brace; try the next one.
        start = text.find("{", start + 1)
    return None


def _reject_constant(name: str) -> Any:
    raise JSONExtractionError(f"Non-finite number {name} in LLM response")


def _finite_float(literal: str) -> float:
    value = float(literal)
    if not math.isfinite(value):
        raise JSONExtractionError(f"Non-finite number {literal} in LLM response")
    return value


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Extract and parse the first JSON object in free-text model output.
    Tolerates markdown fencing and prose around the object. NaN, Infinity
    and overflowing numbers are rejected.
    """
    if not text or not text.strip():
        raise JSONExtractionError("Empty LLM response")

    block = find_balanced_object(strip_code_fence(text))
    if block is None:
        raise JSONExtractionError("No JSON object found in LLM response")

    try:
        parsed = json.loads(block, parse_constant=_reject_constant, parse_float=_finite_float)
    except json.JSONDecodeError as exc:
        raise JSONExtractionError(f"Invalid JSON in LLM response: {exc.msg}") from exc

    if not isinstance(parsed, dict):
        raise JSONExtractionError("LLM response JSON is not an object")
    return parsed


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal data hashes equally."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()

"""
LLM client boundary.

The pipeline and the safety evaluator only see ``LLMClient.complete``.
Vendor exceptions never cross this module; they are re-raised as LLMError.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol

import anthropic

from packages.shared.env import parse_float_env

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", DEFAULT_MODEL)
LLM_TIMEOUT_SECONDS = parse_float_env("LLM_TIMEOUT_SECONDS", 60.0)


class LLMError(Exception):
    """LLM call failed, timed out, or returned no usable text."""


@dataclass(frozen=True)
class LLMResponse:
    text: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LLMClient(Protocol):
    model: str

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int,
        temperature: float = 0.0,
    ) -> LLMResponse:
        ...


class AnthropicLLM:
    """Anthropic Messages API client with a hard client-side timeout."""

    def __init__(self, api_key: str, model: str = ANTHROPIC_MODEL, timeout: float = LLM_TIMEOUT_SECONDS):
        self.model = model
        self.timeout = timeout
        # Timeouts are terminal for a run; no SDK-level retries.
        self._client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int,
        temperature: float = 0.0,
    ) -> LLMResponse:
        try:
            message = self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APITimeoutError as exc:
            raise LLMError(f"LLM call timed out after {self.timeout}s") from exc
        except anthropic.APIError as exc:
            raise LLMError(f"LLM call failed: {exc}") from exc

        text = "".join(block.text for block in message.content if getattr(block, "type", None) == "text")
        if not text:
            raise LLMError("No text response from LLM")

        usage = getattr(message, "usage", None)
        return LLMResponse(
            text=text,
            model=getattr(message, "model", None) or self.model,
            prompt_tokens=getattr(usage, "input_tokens", 0) or 0,
            completion_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


def get_api_key() -> Optional[str]:
    key = (os.getenv("ANTHROPIC_API_KEY") or os.getenv("ANTHROPIC_API_TOKEN") or "").strip()
    return key or None


def get_llm_client() -> Optional[LLMClient]:
    """Default client from the environment, or None when no credential is configured."""
    api_key = get_api_key()
    if api_key is None:
        logger.warning("ANTHROPIC_API_KEY not configured; LLM client unavailable")
        return None
    return AnthropicLLM(api_key=api_key)

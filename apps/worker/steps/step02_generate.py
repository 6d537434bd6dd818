"""
Step 2: Draft the diagnosis with the LLM.
"""
from __future__ import annotations

import logging
from typing import Optional

from apps.worker.lib.llm_client import LLMClient, LLMError, LLMResponse
from apps.worker.lib.prompts import build_diagnosis_prompts
from packages.shared.env import parse_int_env
from packages.shared.models.domain import ContextPack

logger = logging.getLogger(__name__)

DIAGNOSIS_MAX_TOKENS = parse_int_env("DIAGNOSIS_MAX_TOKENS", 2048)
DIAGNOSIS_TEMPERATURE = 0.2


def generate_diagnosis(run_id: str, pack: ContextPack, llm: Optional[LLMClient]) -> LLMResponse:
    if llm is None:
        raise LLMError("ANTHROPIC_API_KEY not configured")

    system_prompt, user_prompt = build_diagnosis_prompts(pack)
    response = llm.complete(
        system_prompt,
        user_prompt,
        max_tokens=DIAGNOSIS_MAX_TOKENS,
        temperature=DIAGNOSIS_TEMPERATURE,
    )
    logger.info(
        f"[{run_id}] LLM draft received (model={response.model}, "
        f"prompt_tokens={response.prompt_tokens}, completion_tokens={response.completion_tokens})"
    )
    return response

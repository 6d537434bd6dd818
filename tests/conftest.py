import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rhythm.db")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("HIPAA_AUDIT_LOGGING", "false")

import pytest

from apps.worker.lib.context_pack import compute_inputs_hash
from apps.worker.lib.llm_client import LLMError, LLMResponse
from packages.shared.models.domain import ContextPack, ContextPackMetadata

SAFETY_PROMPT_MARKER = "medical safety assessment AI"

GOOD_DIAGNOSIS = json.dumps(
    {
        "summary": "Elevated stress markers with stable sleep quality.",
        "findings": ["Stress score trending upward over the last month"],
        "recommendations": ["Schedule a follow-up conversation in two weeks"],
        "risk_level": "moderate",
        "confidence_score": 0.8,
    }
)

SAFETY_PASS = json.dumps(
    {
        "safetyScore": 95,
        "overallSeverity": "none",
        "recommendedAction": "PASS",
        "findings": [],
        "summaryReasoning": "Content is consistent and appropriately hedged.",
    }
)


class FakeLLM:
    """Scripted LLMClient. Routes on the system prompt; a reply may be text or an exception to raise."""

    model = "fake-model"

    def __init__(self, diagnosis=GOOD_DIAGNOSIS, safety=SAFETY_PASS):
        self.diagnosis = diagnosis
        self.safety = safety
        self.calls: list[str] = []

    def complete(self, system_prompt, user_prompt, *, max_tokens, temperature=0.0):
        kind = "safety" if SAFETY_PROMPT_MARKER in system_prompt else "diagnosis"
        self.calls.append(kind)
        reply = self.safety if kind == "safety" else self.diagnosis
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            raise LLMError(f"No scripted {kind} reply")
        return LLMResponse(text=reply, model=self.model, prompt_tokens=120, completion_tokens=48)


def make_context_pack(patient_id: str) -> ContextPack:
    payload = {
        "patient_id": patient_id,
        "demographics": {"age_band": "40-49"},
        "current_measures": {"stress_score": 62, "sleep_score": 71},
        "anamnesis": {"entries": [{"note": "Reports work-related stress"}]},
        "funnel_runs": {"runs": []},
    }
    return ContextPack(**payload, metadata=ContextPackMetadata(inputs_hash=compute_inputs_hash(payload)))


@pytest.fixture
def fake_llm():
    return FakeLLM


@pytest.fixture
def context_provider():
    return make_context_pack

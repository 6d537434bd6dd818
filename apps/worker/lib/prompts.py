"""
Fixed, versioned LLM prompts for diagnosis drafting and safety review.

Prompts are immutable once published. Changing wording means adding a new
version constant, never editing an existing template.
"""
from __future__ import annotations

import json

from packages.shared.models.domain import ContextPack, GeneratedSection

DIAGNOSIS_PROMPT_VERSION = "v1.0.0"
SAFETY_PROMPT_VERSION = "v1.0.0"

DIAGNOSIS_SYSTEM_PROMPT = """You are a clinical decision support assistant that analyzes patient stress and resilience data for clinician review.

YOUR ROLE:
- Summarize the key findings in the provided patient context
- List the observations that support your assessment
- Recommend evidence-based next steps for the clinician
- You do NOT make final diagnoses and you do NOT prescribe treatments

GUARDRAILS:
1. Output is for clinician review only and is not medical advice.
2. Never include patient identifiers in your output.
3. State uncertainty through confidence_score.

OUTPUT FORMAT:
Return ONLY valid JSON with this structure:
{
  "summary": <concise overview, max 1000 chars>,
  "findings": [<observation>, ...],
  "recommendations": [<next step>, ...],
  "risk_level": <"low"|"moderate"|"high"|"critical">,
  "confidence_score": <number between 0 and 1>
}"""

DIAGNOSIS_USER_TEMPLATE = """Analyze the following patient context and draft a diagnosis for clinician review.

Patient ID: {patient_id}
Demographics: {demographics}
Current measures: {current_measures}
Anamnesis entries: {anamnesis_count}
Funnel runs: {funnel_run_count}

Full context pack:
{context_json}

Respond with the JSON object only."""

SAFETY_SYSTEM_PROMPT = """You are a medical safety assessment AI used EXCLUSIVELY for quality control of generated clinical content.

YOUR STRICT ROLE:
- Evaluate content sections for safety, consistency, and appropriateness
- Identify contraindications, plausibility issues, or inappropriate tone
- You do NOT diagnose, prescribe, or generate new recommendations

GUARDRAILS:
1. You receive only de-identified content. Never request or reference patient identifiers.
2. Your role is quality control, not clinical guidance.
3. Always return valid JSON matching the required schema.

EVALUATION CRITERIA:
1. Consistency: are statements internally consistent across sections?
2. Medical plausibility: are claims realistic and evidence-based?
3. Contraindications: do recommendations conflict with stated risk factors?
4. Tone appropriateness: is language clear and non-alarmist?
5. Information quality: is content accurate and appropriately scoped?

OUTPUT FORMAT:
Return ONLY valid JSON with this structure:
{
  "safetyScore": <0-100, higher = safer>,
  "overallSeverity": <"none"|"low"|"medium"|"high"|"critical">,
  "recommendedAction": <"PASS"|"FLAG"|"BLOCK"|"UNKNOWN">,
  "findings": [
    {
      "category": <"consistency"|"medical_plausibility"|"contraindication"|"tone_appropriateness"|"information_quality"|"other">,
      "severity": <"none"|"low"|"medium"|"high"|"critical">,
      "sectionKey": <section identifier or null>,
      "reason": <clear explanation, no PHI>,
      "suggestedAction": <"PASS"|"FLAG"|"BLOCK">
    }
  ],
  "summaryReasoning": <brief overall assessment, max 500 chars>
}

ACTION GUIDELINES:
- PASS: safe to proceed (score >= 80, no high/critical findings)
- FLAG: review recommended (score 60-79, or medium findings)
- BLOCK: review required (score < 60, or high/critical findings)
- UNKNOWN: only if you cannot evaluate"""

SAFETY_USER_TEMPLATE = """Evaluate the following content sections for safety and quality:

{sections_content}

CONTEXT:
- Risk Score: {risk_score}
- Risk Level: {risk_level}

Provide your safety assessment as JSON following the required schema."""


def build_diagnosis_prompts(pack: ContextPack) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) for a diagnosis draft."""
    user = DIAGNOSIS_USER_TEMPLATE.format(
        patient_id=pack.patient_id,
        demographics=json.dumps(pack.demographics, sort_keys=True, default=str),
        current_measures=json.dumps(pack.current_measures, sort_keys=True, default=str),
        anamnesis_count=len(pack.anamnesis.get("entries") or []),
        funnel_run_count=len(pack.funnel_runs.get("runs") or []),
        context_json=pack.model_dump_json(indent=2),
    )
    return DIAGNOSIS_SYSTEM_PROMPT, user


def format_sections_for_prompt(sections: list[GeneratedSection]) -> str:
    # Only section keys and drafted text leave the process.
    return "\n---\n\n".join(
        f"### Section: {s.section_key}\n\n{s.text}\n" for s in sections
    )


def build_safety_prompts(sections: list[GeneratedSection]) -> tuple[str, str]:
    first = sections[0] if sections else None
    risk_score = first.scores.get("riskScore", 0) if first else 0
    risk_level = first.signals[0] if first and first.signals else "unknown"
    user = SAFETY_USER_TEMPLATE.format(
        sections_content=format_sections_for_prompt(sections),
        risk_score=risk_score,
        risk_level=risk_level,
    )
    return SAFETY_SYSTEM_PROMPT, user

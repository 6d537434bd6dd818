from apps.worker.lib.prompts import (
    DIAGNOSIS_PROMPT_VERSION,
    SAFETY_PROMPT_VERSION,
    build_diagnosis_prompts,
    build_safety_prompts,
)
from apps.worker.steps.step05_review_gates import diagnosis_to_sections
from packages.shared.models.domain import DiagnosisResult, GeneratedSection


def test_prompt_versions_are_pinned():
    assert DIAGNOSIS_PROMPT_VERSION == "v1.0.0"
    assert SAFETY_PROMPT_VERSION == "v1.0.0"


def test_diagnosis_prompt_embeds_context(context_provider):
    pack = context_provider("patient-7")
    system, user = build_diagnosis_prompts(pack)
    assert "Return ONLY valid JSON" in system
    assert "Patient ID: patient-7" in user
    assert "Anamnesis entries: 1" in user
    assert '"stress_score": 62' in user


def test_safety_prompt_carries_sections_and_risk_context():
    sections = [
        GeneratedSection(section_key="summary", text="Stress is high.", signals=["high"], scores={"riskScore": 72}),
        GeneratedSection(section_key="recommendations", text="Rest.", signals=["high"]),
    ]
    system, user = build_safety_prompts(sections)
    assert "medical safety assessment AI" in system
    assert "### Section: summary" in user
    assert "### Section: recommendations" in user
    assert "Risk Score: 72" in user
    assert "Risk Level: high" in user


def test_safety_prompt_without_sections():
    _, user = build_safety_prompts([])
    assert "Risk Level: unknown" in user


def test_diagnosis_to_sections():
    diagnosis = DiagnosisResult(
        summary="Overview",
        findings=["a", "b"],
        recommendations=["c"],
        risk_level="high",
        confidence_score=0.4,
    )
    sections = diagnosis_to_sections(diagnosis)
    assert [s.section_key for s in sections] == ["summary", "findings", "recommendations"]
    assert sections[1].text == "a\nb"
    assert all(s.signals == ["high"] for s in sections)
    assert sections[0].scores == {"confidence_score": 0.4}


def test_diagnosis_to_sections_carries_risk_score_measure():
    diagnosis = DiagnosisResult(summary="Overview", findings=["a"], recommendations=["c"])
    sections = diagnosis_to_sections(diagnosis, {"riskScore": 72, "stress_score": 40})
    assert all(s.scores == {"riskScore": 72.0} for s in sections)

    assert diagnosis_to_sections(diagnosis, {"risk_score": 55})[0].scores == {"riskScore": 55.0}
    assert diagnosis_to_sections(diagnosis, {"riskScore": "high"})[0].scores == {}
    assert diagnosis_to_sections(diagnosis, {"riskScore": True})[0].scores == {}

    _, user = build_safety_prompts(diagnosis_to_sections(diagnosis, {"riskScore": 72}))
    assert "Risk Score: 72.0" in user

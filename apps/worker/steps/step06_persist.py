"""
Step 6: Persist the artifact and finalize the run.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from apps.worker.pipeline_persistence import persist_success
from packages.shared.models.domain import ContextPack, DiagnosisResult

logger = logging.getLogger(__name__)


def persist_diagnosis(
    run_id: str,
    *,
    organization_id: str,
    patient_id: str,
    diagnosis: DiagnosisResult,
    pack: ContextPack,
    review: Optional[dict[str, Any]],
    processing_time_ms: int,
) -> str:
    diagnosis_data = diagnosis.model_dump(mode="json", exclude_none=True)
    artifact_data: dict[str, Any] = {"diagnosis": diagnosis_data}
    if review is not None:
        artifact_data["review"] = review

    output_data = {
        "summary": diagnosis.summary,
        "diagnosis": diagnosis_data,
        "context_hash": pack.metadata.inputs_hash,
        "review": review,
    }
    artifact_id = persist_success(
        run_id,
        organization_id=organization_id,
        patient_id=patient_id,
        artifact_name=f"diagnosis-{run_id}",
        artifact_data=artifact_data,
        risk_level=diagnosis.risk_level.value if diagnosis.risk_level else None,
        output_data=output_data,
        processing_time_ms=processing_time_ms,
    )
    logger.info(f"[{run_id}] Artifact {artifact_id} persisted and linked")
    return artifact_id

"""
Persistence helpers for diagnosis run outcomes.

Every write that moves a run out of ``running`` is conditional on the run
still being ``running``; a zero row count means another writer got there first.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from packages.db.database import get_session
from packages.db.models import (
    DiagnosisArtifact as ArtifactORM,
    DiagnosisRun as RunORM,
    DiagnosisRunArtifact as RunArtifactORM,
)
from packages.shared.models.enums import RunStatus

ERROR_MESSAGE_LIMIT = 2000


class ArtifactPersistError(Exception):
    """Artifact insert, link, or final status write failed; the transaction was rolled back."""


def _link_artifact(session: Session, run_id: str, artifact_id: str, sequence_order: int = 0) -> None:
    session.add(RunArtifactORM(run_id=run_id, artifact_id=artifact_id, sequence_order=sequence_order))
    session.flush()


def persist_success(
    run_id: str,
    *,
    organization_id: str,
    patient_id: str,
    artifact_name: str,
    artifact_data: dict[str, Any],
    risk_level: Optional[str],
    output_data: dict[str, Any],
    processing_time_ms: int,
) -> str:
    """
    Insert artifact, link it, and mark the run succeeded in one transaction.
    Returns the artifact id. Raises ArtifactPersistError and leaves no rows behind on failure.
    """
    try:
        with get_session() as session:
            artifact = ArtifactORM(
                organization_id=organization_id,
                patient_id=patient_id,
                artifact_type="diagnosis_json",
                artifact_name=artifact_name,
                artifact_data=artifact_data,
                schema_version="v1",
                risk_level=risk_level,
            )
            session.add(artifact)
            session.flush()
            artifact_id = artifact.id

            _link_artifact(session, run_id, artifact_id)

            now = datetime.now(timezone.utc)
            rows_updated = (
                session.query(RunORM)
                .filter(RunORM.id == run_id)
                .filter(RunORM.status == RunStatus.RUNNING.value)
                .update(
                    {
                        "status": RunStatus.SUCCEEDED.value,
                        "completed_at": now,
                        "updated_at": now,
                        "processing_time_ms": processing_time_ms,
                        "output_data": {**output_data, "artifact_id": artifact_id},
                        "error_code": None,
                        "error_message": None,
                        "error_details": None,
                    },
                    synchronize_session=False,
                )
            )
            if rows_updated != 1:
                raise ArtifactPersistError(f"Run {run_id} is no longer running; refusing to finalize")
    except ArtifactPersistError:
        raise
    except Exception as exc:
        raise ArtifactPersistError(f"Failed to persist diagnosis artifact: {exc}") from exc
    return artifact_id


def finalize_failed(
    run_id: str,
    error_code: str,
    error_message: str,
    error_details: Optional[dict[str, Any]] = None,
    processing_time_ms: Optional[int] = None,
) -> bool:
    """Mark a running run as failed. Returns False when the run was not running."""
    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {
        "status": RunStatus.FAILED.value,
        "completed_at": now,
        "updated_at": now,
        "error_code": error_code,
        "error_message": (error_message or "")[:ERROR_MESSAGE_LIMIT],
        "error_details": error_details,
    }
    if processing_time_ms is not None:
        values["processing_time_ms"] = processing_time_ms
    with get_session() as session:
        rows_updated = (
            session.query(RunORM)
            .filter(RunORM.id == run_id)
            .filter(RunORM.status == RunStatus.RUNNING.value)
            .update(values, synchronize_session=False)
        )
    return rows_updated == 1


def get_linked_artifact_ids(session: Session, run_id: str) -> list[str]:
    rows = (
        session.query(RunArtifactORM.artifact_id)
        .filter(RunArtifactORM.run_id == run_id)
        .order_by(RunArtifactORM.sequence_order)
        .all()
    )
    return [r[0] for r in rows]

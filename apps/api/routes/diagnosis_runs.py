"""
API route: Diagnosis runs
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from apps.api.authz import (
    CLINICAL_ROLES,
    RequestIdentity,
    assert_org_access,
    get_request_identity,
    require_role,
)
from apps.worker.lib.context_pack import ContextProvider, build_patient_context_pack
from apps.worker.lib.llm_client import LLMClient, get_llm_client as _env_llm_client
from apps.worker.runner import claim_run, enqueue_run, execute_claimed_run, execute_next
from packages.db.database import get_db, get_session
from packages.db.models import DiagnosisArtifact, DiagnosisRun, DiagnosisRunArtifact
from packages.shared.env import parse_bool_env
from packages.shared.models import RunStatus, WorkerResult

router = APIRouter(tags=["diagnosis-runs"])

WORKER_ROLES = CLINICAL_ROLES | {"worker"}


# ── Dependencies (overridable in tests) ───────────────────────────────────


def get_llm_client() -> Optional[LLMClient]:
    return _env_llm_client()


def get_context_provider() -> ContextProvider:
    return build_patient_context_pack


# ── Schemas ───────────────────────────────────────────────────────────────


class CreateDiagnosisRunRequest(BaseModel):
    organization_id: Optional[str] = None
    input_config: dict[str, Any] = Field(default_factory=dict)
    max_retries: int = Field(default=3, ge=1, le=10)


class DiagnosisRunResponse(BaseModel):
    id: str
    patient_id: str
    organization_id: str
    status: str
    retry_count: int
    max_retries: int
    input_config: dict | None
    output_data: dict | None
    error_code: str | None
    error_message: str | None
    error_details: dict | None
    created_at: str | None
    started_at: str | None
    completed_at: str | None
    processing_time_ms: int | None


class ArtifactResponse(BaseModel):
    id: str
    artifact_type: str
    artifact_name: str
    schema_version: str
    risk_level: str | None
    sequence_order: int
    artifact_data: dict
    created_at: str | None


class ExecuteRunResponse(BaseModel):
    run_id: str
    status: str
    artifact_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    requires_review: bool | None = None


class WorkerExecuteResponse(BaseModel):
    processed: bool
    result: ExecuteRunResponse | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _run_response(run: DiagnosisRun) -> DiagnosisRunResponse:
    return DiagnosisRunResponse(
        id=run.id,
        patient_id=run.patient_id,
        organization_id=run.organization_id,
        status=run.status,
        retry_count=run.retry_count,
        max_retries=run.max_retries,
        input_config=run.input_config,
        output_data=run.output_data,
        error_code=run.error_code,
        error_message=run.error_message,
        error_details=run.error_details,
        created_at=_iso(run.created_at),
        started_at=_iso(run.started_at),
        completed_at=_iso(run.completed_at),
        processing_time_ms=run.processing_time_ms,
    )


def _execute_response(result: WorkerResult) -> ExecuteRunResponse:
    return ExecuteRunResponse(
        run_id=result.run_id,
        status=result.status.value,
        artifact_id=result.artifact_id,
        error_code=result.error.code.value if result.error else None,
        error_message=result.error.message if result.error else None,
        requires_review=result.requires_review,
    )


def _load_run(db: Session, run_id: str, identity: RequestIdentity | None) -> DiagnosisRun:
    run = db.query(DiagnosisRun).filter_by(id=run_id).first()
    if not run:
        raise HTTPException(status_code=404, detail="Diagnosis run not found")
    assert_org_access(identity, run.organization_id)
    return run


# ── Routes ────────────────────────────────────────────────────────────────


@router.post("/patients/{patient_id}/diagnosis-runs", response_model=DiagnosisRunResponse, status_code=202)
def create_diagnosis_run(
    patient_id: str,
    req: CreateDiagnosisRunRequest = CreateDiagnosisRunRequest(),
    db: Session = Depends(get_db),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """Queue a new diagnosis run for a patient."""
    require_role(identity, CLINICAL_ROLES)

    organization_id = req.organization_id or (identity.org_id if identity else None)
    if not organization_id:
        raise HTTPException(status_code=400, detail="organization_id is required")
    assert_org_access(identity, organization_id)

    run_id = enqueue_run(
        patient_id,
        organization_id,
        input_config=req.input_config,
        max_retries=req.max_retries,
    )
    return _run_response(db.query(DiagnosisRun).filter_by(id=run_id).one())


@router.get("/patients/{patient_id}/diagnosis-runs", response_model=list[DiagnosisRunResponse])
def list_diagnosis_runs(
    patient_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """List diagnosis runs for a patient, newest first."""
    query = db.query(DiagnosisRun).filter_by(patient_id=patient_id)
    if identity is not None:
        query = query.filter_by(organization_id=identity.org_id)
    runs = query.order_by(DiagnosisRun.created_at.desc(), DiagnosisRun.id).all()
    return [_run_response(r) for r in runs]


@router.get("/diagnosis-runs/{run_id}", response_model=DiagnosisRunResponse)
def get_diagnosis_run(
    run_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """Get run status, output reference and error payload."""
    return _run_response(_load_run(db, run_id, identity))


@router.get("/diagnosis-runs/{run_id}/artifacts", response_model=list[ArtifactResponse])
def list_run_artifacts(
    run_id: str,
    db: Session = Depends(get_db),
    identity: RequestIdentity | None = Depends(get_request_identity),
):
    """List artifacts linked to a run."""
    _load_run(db, run_id, identity)
    rows = (
        db.query(DiagnosisRunArtifact, DiagnosisArtifact)
        .join(DiagnosisArtifact, DiagnosisArtifact.id == DiagnosisRunArtifact.artifact_id)
        .filter(DiagnosisRunArtifact.run_id == run_id)
        .order_by(DiagnosisRunArtifact.sequence_order)
        .all()
    )
    return [
        ArtifactResponse(
            id=artifact.id,
            artifact_type=artifact.artifact_type,
            artifact_name=artifact.artifact_name,
            schema_version=artifact.schema_version,
            risk_level=artifact.risk_level,
            sequence_order=link.sequence_order,
            artifact_data=artifact.artifact_data,
            created_at=_iso(artifact.created_at),
        )
        for link, artifact in rows
    ]


@router.post("/diagnosis-runs/{run_id}/execute", response_model=ExecuteRunResponse)
def execute_diagnosis_run(
    run_id: str,
    identity: RequestIdentity | None = Depends(get_request_identity),
    llm: Optional[LLMClient] = Depends(get_llm_client),
    context_provider: ContextProvider = Depends(get_context_provider),
):
    """Claim a specific queued run and execute it synchronously."""
    require_role(identity, CLINICAL_ROLES)

    with get_session() as session:
        run = session.query(DiagnosisRun).filter_by(id=run_id).first()
        if not run:
            raise HTTPException(status_code=404, detail="Diagnosis run not found")
        assert_org_access(identity, run.organization_id)
        status = run.status

    if status != RunStatus.QUEUED.value:
        raise HTTPException(status_code=409, detail=f"Diagnosis run is {status}, expected queued")
    if not claim_run(run_id):
        raise HTTPException(status_code=409, detail="Diagnosis run was claimed by another worker")

    result = execute_claimed_run(run_id, llm=llm, context_provider=context_provider)
    return _execute_response(result)


@router.post("/workers/diagnosis-runs/execute", response_model=WorkerExecuteResponse)
def execute_next_diagnosis_run(
    identity: RequestIdentity | None = Depends(get_request_identity),
    llm: Optional[LLMClient] = Depends(get_llm_client),
    context_provider: ContextProvider = Depends(get_context_provider),
):
    """Claim and execute the oldest queued run, if any."""
    if not parse_bool_env("DIAGNOSIS_WORKER_ENABLED", True):
        raise HTTPException(status_code=403, detail="Diagnosis worker is disabled")
    require_role(identity, WORKER_ROLES)

    result = execute_next(llm=llm, context_provider=context_provider)
    if result is None:
        return WorkerExecuteResponse(processed=False)
    return WorkerExecuteResponse(processed=True, result=_execute_response(result))

"""
API route: Diagnosis reconciliation (operator-triggered)
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from apps.api.authz import CLINICAL_ROLES, RequestIdentity, get_request_identity, require_role
from apps.api.routes.diagnosis_runs import get_context_provider, get_llm_client
from apps.worker.lib.context_pack import ContextProvider
from apps.worker.lib.llm_client import LLMClient
from apps.worker.reconcile import MAX_IDS, MAX_LIMIT, reconcile
from apps.worker.runner import execute_claimed_run
from packages.shared.env import parse_int_env
from packages.shared.models import ReconcileOptions, ReconcileSummary

router = APIRouter(tags=["admin"])


def _default_stale_minutes() -> Optional[int]:
    value = parse_int_env("RECONCILE_STALE_RUNNING_MINUTES", 0)
    return value if value >= 1 else None


class ReconcileRequest(BaseModel):
    dry_run: bool = True
    limit: int = Field(default=200, ge=1, le=MAX_LIMIT)
    retry: bool = True
    include_failed_without_error: bool = True
    backoff_ms: int = Field(default=750, ge=0, le=60_000)
    max_ids: int = Field(default=50, ge=0, le=MAX_IDS)
    stale_running_minutes: Optional[int] = Field(default=None, ge=1)


@router.post("/admin/diagnosis/reconcile", response_model=ReconcileSummary)
def reconcile_diagnosis_runs(
    req: ReconcileRequest = ReconcileRequest(),
    identity: RequestIdentity | None = Depends(get_request_identity),
    llm: Optional[LLMClient] = Depends(get_llm_client),
    context_provider: ContextProvider = Depends(get_context_provider),
):
    """Scan terminal runs and repair missing artifacts or error codes."""
    require_role(identity, CLINICAL_ROLES)

    options = ReconcileOptions(**req.model_dump())
    if options.stale_running_minutes is None:
        options.stale_running_minutes = _default_stale_minutes()

    return reconcile(
        options,
        execute=lambda run_id: execute_claimed_run(run_id, llm=llm, context_provider=context_provider),
    )

"""
Pipeline orchestrator: runs the diagnosis steps for one claimed run.

context → generate → extract → validate → review gates → persist.
Every failure is mapped to an error code and finalizes the run as failed;
the worker's own code path never leaves a run in ``running``.
"""
from __future__ import annotations

import logging
import time
import traceback
from typing import Any, Optional

from packages.db.database import get_session
from packages.db.models import DiagnosisRun as RunORM
from packages.shared.env import parse_bool_env
from packages.shared.models import ErrorCode, ErrorInfo, RunStatus, WorkerResult
from packages.shared.utils.json_utils import JSONExtractionError
from packages.shared.validation.rule_registry import RuleRegistry

from apps.worker.lib.context_pack import ContextBuildError, ContextProvider, build_patient_context_pack
from apps.worker.lib.llm_client import LLMClient, LLMError, get_llm_client
from apps.worker.pipeline_persistence import ERROR_MESSAGE_LIMIT, ArtifactPersistError, finalize_failed
from apps.worker.steps.step01_context import load_context_pack
from apps.worker.steps.step02_generate import generate_diagnosis
from apps.worker.steps.step03_extract import extract_diagnosis_json
from apps.worker.steps.step04_validate import RAW_RESPONSE_LIMIT, DiagnosisValidationError, validate_diagnosis
from apps.worker.steps.step05_review_gates import run_review_gates
from apps.worker.steps.step06_persist import persist_diagnosis

logger = logging.getLogger(__name__)

REVIEW_GATES_ENABLED = parse_bool_env("DIAGNOSIS_REVIEW_GATES_ENABLED", True)

_DEFAULT_LLM: Any = object()


def _review_gates_enabled(input_config: Optional[dict]) -> bool:
    if not REVIEW_GATES_ENABLED:
        return False
    if input_config and input_config.get("review_gates") is False:
        return False
    return True


def run_pipeline(
    run_id: str,
    *,
    context_provider: Optional[ContextProvider] = None,
    llm: Optional[LLMClient] = _DEFAULT_LLM,
    registry: Optional[RuleRegistry] = None,
) -> WorkerResult:
    """
    Execute the diagnosis pipeline for a run that has already been claimed.

    ``llm`` defaults to the environment-configured client; pass ``None`` to
    simulate a missing credential.
    """
    start_time = time.monotonic()

    with get_session() as session:
        run_row = session.query(RunORM).filter_by(id=run_id).first()
        if not run_row:
            logger.error(f"Run {run_id} not found")
            return WorkerResult(
                run_id=run_id,
                status=RunStatus.FAILED,
                error=ErrorInfo(code=ErrorCode.UNKNOWN_ERROR, message="Run not found"),
            )
        if run_row.status != RunStatus.RUNNING.value:
            logger.error(f"Run {run_id} is {run_row.status}, expected running; not executing")
            return WorkerResult(
                run_id=run_id,
                status=RunStatus(run_row.status),
                error=ErrorInfo(code=ErrorCode.UNKNOWN_ERROR, message=f"Run is {run_row.status}, not running"),
            )
        patient_id = run_row.patient_id
        organization_id = run_row.organization_id
        input_config = dict(run_row.input_config or {})

    if context_provider is None:
        context_provider = build_patient_context_pack
    if llm is _DEFAULT_LLM:
        llm = get_llm_client()

    def elapsed_ms() -> int:
        return int((time.monotonic() - start_time) * 1000)

    try:
        # ── Step 1: Context pack ──────────────────────────────────────
        logger.info(f"[{run_id}] Step 1: Context pack")
        try:
            pack = load_context_pack(run_id, patient_id, context_provider)
        except ContextBuildError as exc:
            return _fail_run(run_id, ErrorCode.CONTEXT_BUILD_ERROR, str(exc), elapsed_ms=elapsed_ms())

        # ── Step 2: LLM draft ─────────────────────────────────────────
        logger.info(f"[{run_id}] Step 2: LLM diagnosis draft")
        try:
            response = generate_diagnosis(run_id, pack, llm)
        except LLMError as exc:
            return _fail_run(run_id, ErrorCode.EXECUTION_ERROR, str(exc), elapsed_ms=elapsed_ms())

        # ── Step 3: JSON extraction ───────────────────────────────────
        logger.info(f"[{run_id}] Step 3: JSON extraction")
        if not response.text.strip():
            return _fail_run(run_id, ErrorCode.EXECUTION_ERROR, "Empty LLM response", elapsed_ms=elapsed_ms())
        try:
            data = extract_diagnosis_json(response.text)
        except JSONExtractionError as exc:
            # A non-empty answer that is not a JSON object is malformed output.
            return _fail_run(
                run_id,
                ErrorCode.VALIDATION_ERROR,
                str(exc),
                details={
                    "validation_errors": [f"(root): {exc}"],
                    "raw_response": response.text[:RAW_RESPONSE_LIMIT],
                },
                elapsed_ms=elapsed_ms(),
            )

        # ── Step 4: Structural validation ─────────────────────────────
        logger.info(f"[{run_id}] Step 4: Structural validation")
        try:
            diagnosis = validate_diagnosis(run_id, data, response.text)
        except DiagnosisValidationError as exc:
            return _fail_run(
                run_id,
                ErrorCode.VALIDATION_ERROR,
                str(exc),
                details=exc.to_details(),
                elapsed_ms=elapsed_ms(),
            )

        # ── Step 5: Review gates ──────────────────────────────────────
        review = None
        if _review_gates_enabled(input_config):
            logger.info(f"[{run_id}] Step 5: Review gates")
            review = run_review_gates(
                run_id, diagnosis, llm=llm, registry=registry, measures=pack.current_measures
            )
        else:
            logger.info(f"[{run_id}] Step 5: Review gates disabled")

        # ── Step 6: Persist + finalize ────────────────────────────────
        logger.info(f"[{run_id}] Step 6: Persist artifact")
        try:
            artifact_id = persist_diagnosis(
                run_id,
                organization_id=organization_id,
                patient_id=patient_id,
                diagnosis=diagnosis,
                pack=pack,
                review=review,
                processing_time_ms=elapsed_ms(),
            )
        except ArtifactPersistError as exc:
            return _fail_run(run_id, ErrorCode.ARTIFACT_CREATION_FAILED, str(exc), elapsed_ms=elapsed_ms())

        logger.info(f"[{run_id}] Pipeline complete in {elapsed_ms()}ms")
        return WorkerResult(
            run_id=run_id,
            status=RunStatus.SUCCEEDED,
            artifact_id=artifact_id,
            requires_review=review["requires_review"] if review else None,
        )

    except Exception as exc:
        logger.exception(f"[{run_id}] Pipeline failed: {exc}")
        return _fail_run(
            run_id,
            ErrorCode.EXECUTION_ERROR,
            f"{type(exc).__name__}: {exc}",
            details={"traceback": traceback.format_exc()[-ERROR_MESSAGE_LIMIT:]},
            elapsed_ms=elapsed_ms(),
        )


def _fail_run(
    run_id: str,
    code: ErrorCode,
    message: str,
    *,
    details: Optional[dict] = None,
    elapsed_ms: Optional[int] = None,
) -> WorkerResult:
    """Mark a run as failed."""
    message = message[:ERROR_MESSAGE_LIMIT]
    logger.warning(f"[{run_id}] Run failed: {code.value}")
    try:
        if not finalize_failed(run_id, code.value, message, details, elapsed_ms):
            logger.warning(f"[{run_id}] Run was no longer running; failure not recorded")
    except Exception:
        # Left running; reconciliation recovers it once it goes stale.
        logger.exception(f"[{run_id}] Could not record failure {code.value}")
    return WorkerResult(
        run_id=run_id,
        status=RunStatus.FAILED,
        error=ErrorInfo(code=code, message=message, details=details),
    )

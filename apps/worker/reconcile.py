"""
Reconciliation sweep for diagnosis runs left in inconsistent states.

Repairs ``succeeded`` runs that have no linked artifact, backfills an error
code on ``failed`` runs that lack one, and optionally recovers ``running``
runs whose worker stopped heart-beating. Every write is conditional on the
status observed during the scan, so the sweep is safe to run repeatedly and
alongside live workers.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import exists, func, or_

from packages.db.database import get_session
from packages.db.models import DiagnosisRun as RunORM
from packages.db.models import DiagnosisRunArtifact as RunArtifactORM
from packages.shared.models import (
    ErrorCode,
    ReconcileOptions,
    ReconcileSummary,
    RunStatus,
    WorkerResult,
)
from apps.worker.runner import claim_run, execute_claimed_run

logger = logging.getLogger(__name__)

MAX_LIMIT = 500
MAX_IDS = 200

BACKFILL_MESSAGE = "Run failed without an error code; backfilled by reconciliation"
NO_RESULT_MESSAGE = "Run completed without a persisted diagnosis artifact"
STALE_MESSAGE = "Run stopped reporting heartbeats and was timed out by reconciliation"

_RESET_FIELDS: dict[str, Any] = {
    "started_at": None,
    "completed_at": None,
    "claimed_at": None,
    "heartbeat_at": None,
    "worker_id": None,
    "error_code": None,
    "error_message": None,
    "error_details": None,
    "output_data": None,
    "processing_time_ms": None,
}


class _Ledger:
    """Counts decisions, keeps capped id lists, and logs every decision."""

    def __init__(self, summary: ReconcileSummary, max_ids: int):
        self.summary = summary
        self.max_ids = max_ids

    def record(self, action: str, run_id: str, reason: str) -> None:
        actions = self.summary.actions
        setattr(actions, action, getattr(actions, action) + 1)
        ids = getattr(self.summary.run_ids, action)
        if len(ids) < self.max_ids:
            ids.append(run_id)
        logger.info(
            "diagnosis_reconcile run_id=%s action=%s reason=%s dry_run=%s",
            run_id, action, reason, self.summary.dry_run,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _conditional_update(run_id: str, expected_status: str, values: dict[str, Any], *extra_filters) -> bool:
    with get_session() as session:
        rows_updated = (
            session.query(RunORM)
            .filter(RunORM.id == run_id, RunORM.status == expected_status, *extra_filters)
            .update({**values, "updated_at": _utcnow()}, synchronize_session=False)
        )
    return rows_updated == 1


def _requeue(run_id: str, expected_status: str, *extra_filters) -> bool:
    return _conditional_update(
        run_id,
        expected_status,
        {**_RESET_FIELDS, "status": RunStatus.QUEUED.value, "retry_count": RunORM.retry_count + 1},
        *extra_filters,
    )


def _mark_failed(run_id: str, expected_status: str, code: ErrorCode, message: str, *extra_filters) -> bool:
    return _conditional_update(
        run_id,
        expected_status,
        {
            "status": RunStatus.FAILED.value,
            "error_code": code.value,
            "error_message": message,
            "completed_at": _utcnow(),
        },
        *extra_filters,
    )


def _scan_terminal(limit: int) -> list[dict[str, Any]]:
    with get_session() as session:
        linked = exists().where(RunArtifactORM.run_id == RunORM.id)
        rows = (
            session.query(
                RunORM.id,
                RunORM.status,
                RunORM.retry_count,
                RunORM.max_retries,
                RunORM.error_code,
                linked.label("has_artifact"),
            )
            .filter(RunORM.status.in_([RunStatus.SUCCEEDED.value, RunStatus.FAILED.value]))
            .order_by(RunORM.updated_at.desc(), RunORM.id)
            .limit(limit)
            .all()
        )
    return [row._asdict() for row in rows]


def _stale_filter(cutoff: datetime):
    return func.coalesce(RunORM.heartbeat_at, RunORM.started_at, RunORM.claimed_at) < cutoff


def _scan_stale_running(limit: int, cutoff: datetime) -> list[dict[str, Any]]:
    with get_session() as session:
        rows = (
            session.query(RunORM.id, RunORM.retry_count, RunORM.max_retries)
            .filter(RunORM.status == RunStatus.RUNNING.value)
            .filter(_stale_filter(cutoff))
            .order_by(RunORM.created_at, RunORM.id)
            .limit(limit)
            .all()
        )
    return [row._asdict() for row in rows]


def reconcile(
    options: Optional[ReconcileOptions] = None,
    *,
    execute: Optional[Callable[[str], WorkerResult]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcileSummary:
    """
    Scan terminal runs newest-first and repair inconsistencies.
    ``dry_run`` classifies and reports without writing anything.
    """
    options = options or ReconcileOptions()
    limit = min(options.limit, MAX_LIMIT)
    max_ids = min(options.max_ids, MAX_IDS)
    execute = execute or execute_claimed_run

    summary = ReconcileSummary(dry_run=options.dry_run)
    ledger = _Ledger(summary, max_ids)

    def retry_now(run_id: str) -> None:
        if options.backoff_ms:
            sleep(options.backoff_ms / 1000.0)
        if not claim_run(run_id):
            logger.info("diagnosis_reconcile run_id=%s action=retry_claim_lost reason=claimed_elsewhere", run_id)
            return
        result = execute(run_id)
        logger.info(
            "diagnosis_reconcile run_id=%s action=retry_executed reason=%s",
            run_id, result.status.value,
        )

    for run in _scan_terminal(limit):
        summary.totals.scanned += 1
        run_id = run["id"]
        try:
            if run["status"] == RunStatus.SUCCEEDED.value:
                if run["has_artifact"]:
                    ledger.record("skipped", run_id, "artifact_present")
                    continue
                summary.totals.completed_missing_artifact += 1
                can_retry = options.retry and run["retry_count"] < run["max_retries"]
                if can_retry:
                    if options.dry_run:
                        ledger.record("retried", run_id, "missing_artifact")
                    elif _requeue(run_id, RunStatus.SUCCEEDED.value):
                        ledger.record("retried", run_id, "missing_artifact")
                        retry_now(run_id)
                    else:
                        ledger.record("skipped", run_id, "state_changed")
                elif run["error_code"] == ErrorCode.COMPLETED_NO_RESULT.value:
                    ledger.record("skipped", run_id, "already_marked")
                elif options.dry_run or _mark_failed(
                    run_id, RunStatus.SUCCEEDED.value, ErrorCode.COMPLETED_NO_RESULT, NO_RESULT_MESSAGE
                ):
                    reason = "retries_exhausted" if options.retry else "retry_disabled"
                    ledger.record("marked_failed", run_id, reason)
                else:
                    ledger.record("skipped", run_id, "state_changed")

            else:
                if run["error_code"]:
                    ledger.record("skipped", run_id, "error_code_present")
                    continue
                summary.totals.failed_missing_error += 1
                if not options.include_failed_without_error:
                    ledger.record("skipped", run_id, "backfill_disabled")
                elif options.dry_run or _conditional_update(
                    run_id,
                    RunStatus.FAILED.value,
                    {
                        "error_code": ErrorCode.UNKNOWN_ERROR.value,
                        "error_message": func.coalesce(RunORM.error_message, BACKFILL_MESSAGE),
                    },
                    or_(RunORM.error_code.is_(None), RunORM.error_code == ""),
                ):
                    ledger.record("fixed_error_code", run_id, "missing_error_code")
                else:
                    ledger.record("skipped", run_id, "state_changed")
        except Exception as exc:
            logger.exception("diagnosis_reconcile run_id=%s action=failed reason=%s", run_id, type(exc).__name__)
            ledger.record("failed", run_id, type(exc).__name__)

    if options.stale_running_minutes:
        cutoff = _utcnow() - timedelta(minutes=options.stale_running_minutes)
        for run in _scan_stale_running(limit, cutoff):
            summary.totals.scanned += 1
            summary.totals.stale_running += 1
            run_id = run["id"]
            try:
                can_retry = options.retry and run["retry_count"] < run["max_retries"]
                if can_retry:
                    if options.dry_run:
                        ledger.record("retried", run_id, "stale_running")
                    elif _requeue(run_id, RunStatus.RUNNING.value, _stale_filter(cutoff)):
                        ledger.record("retried", run_id, "stale_running")
                        retry_now(run_id)
                    else:
                        ledger.record("skipped", run_id, "state_changed")
                elif options.dry_run or _mark_failed(
                    run_id, RunStatus.RUNNING.value, ErrorCode.STALE_RUN_TIMEOUT, STALE_MESSAGE, _stale_filter(cutoff)
                ):
                    ledger.record("marked_failed", run_id, "stale_running")
                else:
                    ledger.record("skipped", run_id, "state_changed")
            except Exception as exc:
                logger.exception("diagnosis_reconcile run_id=%s action=failed reason=%s", run_id, type(exc).__name__)
                ledger.record("failed", run_id, type(exc).__name__)

    logger.info(
        "diagnosis_reconcile summary dry_run=%s scanned=%d retried=%d marked_failed=%d fixed_error_code=%d skipped=%d failed=%d",
        summary.dry_run,
        summary.totals.scanned,
        summary.actions.retried,
        summary.actions.marked_failed,
        summary.actions.fixed_error_code,
        summary.actions.skipped,
        summary.actions.failed,
    )
    return summary

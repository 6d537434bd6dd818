"""
Worker runner script.
Polls the database for queued diagnosis runs and executes the pipeline.
"""
import logging
import time
import sys
import os
import uuid
import threading
import platform
from datetime import datetime, timezone
from typing import Any, Optional

# Add project root to path if needed (though usually handled by python -m)
sys.path.append(os.getcwd())

from packages.db.database import get_session, init_db
from packages.db.models import DiagnosisRun
from packages.shared.env import parse_float_env, parse_int_env
from packages.shared.models import RunStatus, WorkerResult
from apps.worker.pipeline import run_pipeline

logger = logging.getLogger(__name__)

# Config
POLL_INTERVAL = parse_float_env("WORKER_POLL_SECONDS", 2.0)
HEARTBEAT_INTERVAL = parse_float_env("WORKER_HEARTBEAT_SECONDS", 10.0)
CLAIM_CANDIDATES = parse_int_env("WORKER_CLAIM_CANDIDATES", 5)
WORKER_ID = f"{platform.node()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def get_utc_now():
    return datetime.now(timezone.utc)


def enqueue_run(
    patient_id: str,
    organization_id: str,
    input_config: Optional[dict[str, Any]] = None,
    max_retries: int = 3,
) -> str:
    """Insert a new queued run and return its id."""
    if not 1 <= max_retries <= 10:
        raise ValueError("max_retries must be between 1 and 10")
    with get_session() as session:
        run = DiagnosisRun(
            patient_id=patient_id,
            organization_id=organization_id,
            status=RunStatus.QUEUED.value,
            input_config=input_config or {},
            max_retries=max_retries,
        )
        session.add(run)
        session.flush()
        return run.id


def claim_run(run_id: str, worker_id: str = WORKER_ID) -> bool:
    """
    Atomically move one run from queued to running.
    Returns False when another worker already claimed it (or it was never queued).
    """
    now = get_utc_now()
    with get_session() as session:
        rows_updated = (
            session.query(DiagnosisRun)
            .filter(DiagnosisRun.id == run_id)
            .filter(DiagnosisRun.status == RunStatus.QUEUED.value)
            .update(
                {
                    "status": RunStatus.RUNNING.value,
                    "started_at": now,
                    "claimed_at": now,
                    "heartbeat_at": now,
                    "updated_at": now,
                    "worker_id": worker_id,
                },
                synchronize_session=False,
            )
        )
    if rows_updated == 1:
        return True
    logger.info(f"Run {run_id} already claimed or not queued; skipping")
    return False


def claim_next_queued_run(worker_id: str = WORKER_ID, candidates: int = CLAIM_CANDIDATES) -> Optional[str]:
    """Claim the oldest queued run, moving past runs lost to other workers."""
    with get_session() as session:
        rows = (
            session.query(DiagnosisRun.id)
            .filter(DiagnosisRun.status == RunStatus.QUEUED.value)
            .order_by(DiagnosisRun.created_at, DiagnosisRun.id)
            .limit(max(1, candidates))
            .all()
        )
    for (run_id,) in rows:
        if claim_run(run_id, worker_id):
            return run_id
    return None


class HeartbeatThread(threading.Thread):
    def __init__(self, run_id: str, interval: float = HEARTBEAT_INTERVAL):
        super().__init__(daemon=True)
        self.run_id = run_id
        self.interval = interval
        self.stop_event = threading.Event()

    def run(self):
        logger.debug(f"Heartbeat started for {self.run_id}")
        while not self.stop_event.wait(self.interval):
            try:
                with get_session() as session:
                    session.query(DiagnosisRun).filter(
                        DiagnosisRun.id == self.run_id,
                        DiagnosisRun.status == RunStatus.RUNNING.value,
                    ).update({"heartbeat_at": get_utc_now()}, synchronize_session=False)
            except Exception as e:
                logger.error(f"Heartbeat failed for {self.run_id}: {e}")
        logger.debug(f"Heartbeat stopped for {self.run_id}")

    def stop(self):
        self.stop_event.set()


def execute_claimed_run(run_id: str, **pipeline_kwargs) -> WorkerResult:
    """Run the pipeline for an already-claimed run with a heartbeat alongside."""
    beater = HeartbeatThread(run_id)
    beater.start()
    try:
        return run_pipeline(run_id, **pipeline_kwargs)
    finally:
        beater.stop()
        beater.join()


def execute_next(**pipeline_kwargs) -> Optional[WorkerResult]:
    """Claim and execute the next queued run. Returns None when nothing was claimed."""
    run_id = claim_next_queued_run()
    if run_id is None:
        return None
    logger.info(f"Claimed run {run_id}. Starting pipeline...")
    result = execute_claimed_run(run_id, **pipeline_kwargs)
    logger.info(f"Run {run_id} processing complete: {result.status.value}")
    return result


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    init_db()
    logger.info(f"Worker runner started. ID: {WORKER_ID}")

    while True:
        try:
            if execute_next() is None:
                time.sleep(POLL_INTERVAL)

        except KeyboardInterrupt:
            logger.info("Worker stopping by user request.")
            break
        except Exception as exc:
            logger.exception(f"Unexpected error in worker loop: {exc}")
            time.sleep(5)


if __name__ == "__main__":
    main()

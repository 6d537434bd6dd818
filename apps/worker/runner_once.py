"""
Worker runner (one-shot mode for cron jobs).
Processes ONE queued diagnosis run and exits.
"""
import logging
import sys
import os
import time

# Add project root to path
sys.path.append(os.getcwd())

from packages.db.database import init_db
from apps.worker.runner import claim_next_queued_run, execute_claimed_run

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    """Process one queued run and exit."""
    init_db()
    logger.info("Worker (one-shot) started. Looking for queued run...")

    run_id = claim_next_queued_run()

    if not run_id:
        logger.info("No queued runs found. Exiting.")
        sys.exit(0)

    logger.info(f"Claimed run {run_id}. Starting pipeline...")

    start = time.monotonic()
    result = execute_claimed_run(run_id)
    elapsed = time.monotonic() - start
    logger.info(f"Run {run_id} finished as {result.status.value} in {elapsed:.1f}s")

    sys.exit(0 if result.succeeded else 1)


if __name__ == "__main__":
    main()

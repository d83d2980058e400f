#!/usr/bin/env python3
"""Start the ARQ worker for backfill and maintenance jobs.

Runs process_backfill_job for the API's enqueued syncs plus the two daily
crons (Google Analytics poll, ledger retention purge).

USAGE:
    python -m bizinsights.workers.start_arq_worker

    Or directly:
    arq bizinsights.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    from bizinsights.workers.arq_worker import WorkerSettings

    jobs = ", ".join(f.__name__ for f in WorkerSettings.functions)
    logger.info(
        f"[ARQ] Starting worker (max_jobs={WorkerSettings.max_jobs}, "
        f"redis={WorkerSettings.redis_settings.host}:{WorkerSettings.redis_settings.port}) with jobs: {jobs}"
    )
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()

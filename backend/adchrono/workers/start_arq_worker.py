#!/usr/bin/env python3
"""Start the ARQ worker (job processor) or the scheduler (tick cron).

USAGE:
    python -m adchrono.workers.start_arq_worker
    python -m adchrono.workers.start_arq_worker --scheduler

    Or directly:
    arq adchrono.workers.arq_worker.WorkerSettings
    arq adchrono.workers.arq_worker.SchedulerSettings
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the adchrono job worker")
    parser.add_argument(
        "--scheduler",
        action="store_true",
        help="run the polling scheduler (cron tick) instead of the job processor",
    )
    args = parser.parse_args(argv)

    from arq import run_worker
    from adchrono.workers.arq_worker import SchedulerSettings, WorkerSettings

    if args.scheduler:
        logger.info("Starting ARQ scheduler...")
        run_worker(SchedulerSettings)
    else:
        logger.info("Starting ARQ worker...")
        run_worker(WorkerSettings)


if __name__ == "__main__":
    main()

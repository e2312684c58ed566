"""ARQ worker and scheduler settings.

WHAT:
    - `run_queued_job`: the single arq function every logical queue
      (insights-polling, structure-polling, timeseries-reconstruction)
      dispatches through
    - `scheduler_tick`: cron job that enqueues due repeating definitions
    - `WorkerSettings`: job processor (no cron)
    - `SchedulerSettings`: cron only, bootstraps tenant polling on startup

WHY:
    - Workers scale horizontally; exactly one scheduler process runs the tick
    - Dedup, locking and retry classification stay in `JobScheduler`, so the
      arq layer is only glue

USAGE:
    # Start worker
    arq adchrono.workers.arq_worker.WorkerSettings

    # Start scheduler
    arq adchrono.workers.arq_worker.SchedulerSettings

    # Or use the start script
    python -m adchrono.workers.start_arq_worker [--scheduler]

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - adchrono/workers/job_queue.py
"""

from __future__ import annotations

import asyncio
import logging
import platform
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from arq import cron

from adchrono.deps import get_settings
from adchrono.telemetry import init_sentry
from adchrono.workers.arq_enqueue import get_job_scheduler, get_redis_settings, reset_arq_pool
from adchrono.workers.job_queue import ARQ_QUEUE_NAME

logger = logging.getLogger(__name__)


# =============================================================================
# JOB FUNCTIONS
# =============================================================================

async def run_queued_job(
    ctx: Dict,
    queue_name: str,
    payload: Dict[str, Any],
    dedup_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Dispatch one queued job to the handler registered for `queue_name`."""
    logger.info("[ARQ] %s job %s (try %s, key=%s)", queue_name, ctx.get("job_id"), ctx.get("job_try"), dedup_key)
    return await get_job_scheduler().execute(
        queue_name,
        payload,
        dedup_key,
        attempt=ctx.get("job_try", 1),
        redis=ctx["redis"],
    )


async def scheduler_tick(ctx: Dict) -> Dict[str, Any]:
    """Cron: enqueue repeating definitions that are due."""
    enqueued = await get_job_scheduler().tick()
    return {"enqueued": enqueued}


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    init_sentry()
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up (job processor)")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", ARQ_QUEUE_NAME)
    logger.info("[ARQ] Max attempts: %d, backoff base: %dms (%s)",
                settings.JOB_MAX_ATTEMPTS, settings.JOB_BACKOFF_BASE_MS, settings.JOB_BACKOFF_STRATEGY)
    logger.info("=" * 60)

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - stop enqueueing, log stats."""
    get_job_scheduler().shutdown()
    await reset_arq_pool()

    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %d", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


async def scheduler_startup(ctx: Dict) -> None:
    """Scheduler startup - install polling definitions for every connected tenant."""
    from adchrono.database import SessionLocal
    from adchrono.workers.polling_scheduler import PollingScheduler

    init_sentry()
    polling = PollingScheduler(get_job_scheduler(), SessionLocal)
    started = await asyncio.to_thread(polling.initialize)
    logger.info("[ARQ] Scheduler started; polling %d tenants", started)
    ctx['startup_time'] = datetime.now(timezone.utc)


# =============================================================================
# SETTINGS
# =============================================================================

_TICK_SECONDS = set(range(0, 60, get_settings().SCHEDULER_TICK_SECONDS))


class WorkerSettings:
    """ARQ worker configuration - processes jobs only.

    - max_jobs=10: different dedup keys run concurrently
    - max_tries is JOB_MAX_ATTEMPTS + 1: `JobScheduler` stops raising Retry
      first, so a job cancelled on its last attempt still gets one more run
      that records the FailedJob
    """

    functions = [run_queued_job]

    # NO cron_jobs here - SchedulerSettings runs the tick
    cron_jobs = []

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = get_settings().JOB_LOCK_TIMEOUT_SECONDS
    keep_result = 3600
    retry_jobs = True
    max_tries = get_settings().JOB_MAX_ATTEMPTS + 1
    health_check_interval = 30

    queue_name = ARQ_QUEUE_NAME


class SchedulerSettings:
    """ARQ scheduler configuration - runs the tick cron only (one instance)."""

    functions = [scheduler_tick]

    cron_jobs = [
        cron(scheduler_tick, second=_TICK_SECONDS, run_at_startup=True, unique=True),
    ]

    on_startup = scheduler_startup
    on_shutdown = shutdown

    redis_settings = get_redis_settings()

    max_jobs = 1
    queue_name = "arq:scheduler"

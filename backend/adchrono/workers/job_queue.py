"""Job queue - repeating definitions, deduplication and retries on top of arq.

WHAT:
    `JobScheduler` owns three things:
    - repeating job definitions (one row per dedup key, in SQL)
    - one-off enqueueing onto the arq queue
    - the worker-side dispatcher that runs registered handlers under a
      per-key Redis lock and turns failures into retries or failed-job rows

WHY:
    - Two occurrences sharing a dedup key never run at the same time, while
      different keys run concurrently (arq `max_jobs`)
    - Rescheduling a key replaces its definition instead of stacking a second
      timer
    - Retry behaviour lives in one value object (`RetryPolicy`)

FLOW:
    scheduler_tick (arq cron, every 15s)
        -> JobScheduler.tick()          enqueue due definitions
    run_queued_job (arq function)
        -> JobScheduler.execute()       lock, run handler, classify failure
                ├─ success               {"success": True, ...}
                ├─ retryable, tries left raise arq.Retry(defer=backoff)
                └─ otherwise             FailedJob row (bounded history)

REFERENCES:
    - adchrono/workers/arq_worker.py (arq functions + settings)
    - adchrono/errors.py (retry classification)
    - https://arq-docs.helpmanual.io/#retrying-jobs-and-cancellation
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from arq import Retry
from sqlalchemy import select
from sqlalchemy.orm import Session

from adchrono.errors import DataIntegrityError, is_retryable
from adchrono.models import FailedJob, PollingJobDefinition
from adchrono.telemetry import capture_exception
from adchrono.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Logical queues; all of them travel on the same arq queue
QUEUE_INSIGHTS = "insights-polling"
QUEUE_STRUCTURE = "structure-polling"
QUEUE_RECONSTRUCTION = "timeseries-reconstruction"

ARQ_QUEUE_NAME = "arq:queue"
DISPATCH_FUNCTION = "run_queued_job"
LOCK_PREFIX = "adchrono:job-lock:"

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
PoolProvider = Callable[[], Awaitable[Any]]


def lock_key(dedup_key: str) -> str:
    return f"{LOCK_PREFIX}{dedup_key}"


def insights_dedup_key(tenant_id) -> str:
    return f"insights-polling:{tenant_id}"


def structure_dedup_key(tenant_id, ad_account_id: str) -> str:
    return f"structure-polling:{tenant_id}:{ad_account_id}"


def reconstruction_dedup_key(tenant_id, campaign_id) -> str:
    return f"reconstruct:{tenant_id}:{campaign_id}"


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failed job is retried.

    `delay_ms(n)` is the wait before the retry that follows failed attempt n
    (zero-based): exponential gives base, 2*base, 4*base, ...
    """

    max_attempts: int = 3
    backoff_base_ms: int = 5000
    backoff_strategy: str = "exponential"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base_ms < 0:
            raise ValueError("backoff_base_ms must be >= 0")
        if self.backoff_strategy not in ("exponential", "fixed"):
            raise ValueError(f"Unknown backoff strategy {self.backoff_strategy!r}")

    def delay_ms(self, failed_attempt: int) -> int:
        if self.backoff_strategy == "fixed":
            return self.backoff_base_ms
        return self.backoff_base_ms * (2 ** failed_attempt)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            backoff_base_ms=settings.JOB_BACKOFF_BASE_MS,
            backoff_strategy=settings.JOB_BACKOFF_STRATEGY,
        )


@dataclass(frozen=True)
class DueOccurrence:
    queue_name: str
    dedup_key: str
    payload: Dict[str, Any]
    slot: datetime

    @property
    def job_id(self) -> str:
        # Same key + same slot -> same arq job id, so overlapping ticks cannot double-enqueue
        return f"{self.dedup_key}:{int(self.slot.timestamp() * 1000)}"


class JobScheduler:
    """Repeating/once job scheduling with per-key non-overlap and retries."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        pool_provider: PoolProvider,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        failed_job_limit: int = 100,
        lock_timeout_seconds: int = 600,
    ):
        self._session_factory = session_factory
        self._pool_provider = pool_provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.failed_job_limit = failed_job_limit
        self.lock_timeout_seconds = lock_timeout_seconds
        self._handlers: Dict[str, JobHandler] = {}
        self._accepting = True

    @property
    def accepting(self) -> bool:
        return self._accepting

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def process(self, queue_name: str, handler: JobHandler) -> None:
        """Register the consumer for a logical queue (replaces any previous one)."""
        self._handlers[queue_name] = handler
        logger.info("[JOB_QUEUE] Handler registered for %s", queue_name)

    def has_handler(self, queue_name: str) -> bool:
        return queue_name in self._handlers

    # ------------------------------------------------------------------
    # Repeating definitions
    # ------------------------------------------------------------------

    def schedule_repeating(
        self,
        queue_name: str,
        dedup_key: str,
        interval_ms: int,
        payload: Dict[str, Any],
        *,
        now: Optional[datetime] = None,
    ) -> PollingJobDefinition:
        """Create or replace the repeating definition for `dedup_key`."""
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        now = ensure_utc(now) or utcnow()

        db = self._session_factory()
        try:
            definition = (
                db.query(PollingJobDefinition)
                .filter(PollingJobDefinition.dedup_key == dedup_key)
                .first()
            )
            if definition is None:
                definition = PollingJobDefinition(dedup_key=dedup_key)
                db.add(definition)
                action = "scheduled"
            else:
                action = "replaced"
            definition.queue_name = queue_name
            definition.interval_ms = interval_ms
            definition.payload = payload
            definition.next_run_at = now + timedelta(milliseconds=interval_ms)
            db.commit()
            db.refresh(definition)
            db.expunge(definition)
        finally:
            db.close()

        logger.info(
            "[JOB_QUEUE] %s repeating job %s on %s every %dms",
            action.capitalize(), dedup_key, queue_name, interval_ms,
        )
        return definition

    def stop_repeating(self, dedup_key: str) -> bool:
        """Remove a definition; occurrences already running finish normally."""
        db = self._session_factory()
        try:
            deleted = (
                db.query(PollingJobDefinition)
                .filter(PollingJobDefinition.dedup_key == dedup_key)
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if deleted:
            logger.info("[JOB_QUEUE] Stopped repeating job %s", dedup_key)
        return bool(deleted)

    def list_repeating(self, key_prefix: Optional[str] = None) -> List[PollingJobDefinition]:
        db = self._session_factory()
        try:
            query = db.query(PollingJobDefinition)
            if key_prefix:
                query = query.filter(PollingJobDefinition.dedup_key.startswith(key_prefix))
            definitions = query.order_by(PollingJobDefinition.dedup_key.asc()).all()
            for definition in definitions:
                db.expunge(definition)
            return definitions
        finally:
            db.close()

    def claim_due(self, now: Optional[datetime] = None) -> List[DueOccurrence]:
        """Advance every due definition by whole intervals and return one occurrence each.

        Missed slots (worker down for an hour) collapse into a single occurrence.
        """
        now = ensure_utc(now) or utcnow()
        db = self._session_factory()
        try:
            definitions = (
                db.query(PollingJobDefinition)
                .filter(PollingJobDefinition.next_run_at <= now)
                .order_by(PollingJobDefinition.next_run_at.asc())
                .with_for_update(skip_locked=True)
                .all()
            )
            due = []
            for definition in definitions:
                slot = ensure_utc(definition.next_run_at)
                interval = timedelta(milliseconds=definition.interval_ms)
                next_run_at = slot + interval
                while next_run_at <= now:
                    next_run_at += interval
                definition.next_run_at = next_run_at
                due.append(DueOccurrence(
                    queue_name=definition.queue_name,
                    dedup_key=definition.dedup_key,
                    payload=dict(definition.payload or {}),
                    slot=slot,
                ))
            db.commit()
            return due
        finally:
            db.close()

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Enqueue one occurrence per due definition; returns how many were enqueued."""
        if not self._accepting:
            logger.info("[JOB_QUEUE] Tick ignored, scheduler is shut down")
            return 0

        due = await asyncio.to_thread(self.claim_due, now)
        if not due:
            return 0

        pool = await self._pool_provider()
        enqueued = 0
        for occurrence in due:
            if await pool.exists(lock_key(occurrence.dedup_key)):
                logger.info("[JOB_QUEUE] %s still running, skipping this occurrence", occurrence.dedup_key)
                continue
            job = await pool.enqueue_job(
                DISPATCH_FUNCTION,
                occurrence.queue_name,
                occurrence.payload,
                occurrence.dedup_key,
                _job_id=occurrence.job_id,
                _queue_name=ARQ_QUEUE_NAME,
            )
            if job is not None:
                enqueued += 1
            else:
                logger.debug("[JOB_QUEUE] Occurrence %s already enqueued", occurrence.job_id)

        logger.info("[JOB_QUEUE] Tick: %d due, %d enqueued", len(due), enqueued)
        return enqueued

    # ------------------------------------------------------------------
    # One-off jobs
    # ------------------------------------------------------------------

    async def enqueue_once(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        dedup_key: Optional[str] = None,
    ) -> Optional[str]:
        """Enqueue a single job now; returns the arq job id (None after shutdown)."""
        if not self._accepting:
            logger.warning("[JOB_QUEUE] Refusing to enqueue %s on %s, scheduler is shut down", dedup_key, queue_name)
            return None

        pool = await self._pool_provider()
        job = await pool.enqueue_job(
            DISPATCH_FUNCTION,
            queue_name,
            payload,
            dedup_key,
            _queue_name=ARQ_QUEUE_NAME,
        )
        if job is None:
            return None
        logger.info("[JOB_QUEUE] Enqueued %s on %s (key=%s)", job.job_id, queue_name, dedup_key)
        return job.job_id

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def execute(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        dedup_key: Optional[str],
        *,
        attempt: int,
        redis,
    ) -> Dict[str, Any]:
        """Run the handler for `queue_name`; `attempt` is arq's 1-based job_try.

        Raises:
            arq.Retry: The failure is retryable and attempts remain.
        """
        handler = self._handlers.get(queue_name)
        if handler is None:
            logger.error("[JOB_QUEUE] No handler registered for %s", queue_name)
            await asyncio.to_thread(
                self.record_failure, queue_name, payload, dedup_key, attempt,
                "ConfigurationError", f"No handler registered for queue {queue_name}",
            )
            return {"success": False, "error": f"No handler for {queue_name}"}

        try:
            if dedup_key:
                async with redis.lock(
                    lock_key(dedup_key),
                    timeout=self.lock_timeout_seconds,
                    blocking_timeout=self.lock_timeout_seconds,
                ):
                    result = await handler(payload)
            else:
                result = await handler(payload)
        except Exception as exc:
            return await self._handle_failure(queue_name, payload, dedup_key, attempt, exc)

        return {"success": True, "result": result}

    async def _handle_failure(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        dedup_key: Optional[str],
        attempt: int,
        exc: Exception,
    ) -> Dict[str, Any]:
        if isinstance(exc, DataIntegrityError):
            logger.warning("[JOB_QUEUE] %s (%s) skipped, bad data: %s", queue_name, dedup_key, exc)
            return {"success": False, "skipped": True, "error": str(exc)}

        if is_retryable(exc) and attempt < self.retry_policy.max_attempts:
            delay_ms = self.retry_policy.delay_ms(attempt - 1)
            logger.warning(
                "[JOB_QUEUE] %s (%s) attempt %d/%d failed: %s; retrying in %dms",
                queue_name, dedup_key, attempt, self.retry_policy.max_attempts, exc, delay_ms,
            )
            raise Retry(defer=timedelta(milliseconds=delay_ms)) from exc

        logger.error(
            "[JOB_QUEUE] %s (%s) failed permanently after %d attempt(s): %s",
            queue_name, dedup_key, attempt, exc,
        )
        capture_exception(exc, extra={
            "operation": "run_queued_job",
            "queue_name": queue_name,
            "dedup_key": dedup_key,
            "attempt": attempt,
        })
        await asyncio.to_thread(
            self.record_failure, queue_name, payload, dedup_key, attempt,
            type(exc).__name__, str(exc),
        )
        return {"success": False, "error": str(exc)}

    def record_failure(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        dedup_key: Optional[str],
        attempts: int,
        error_type: str,
        error_message: str,
    ) -> None:
        """Insert a FailedJob row and prune history down to `failed_job_limit`."""
        db = self._session_factory()
        try:
            db.add(FailedJob(
                queue_name=queue_name,
                dedup_key=dedup_key,
                payload=payload,
                attempts=attempts,
                error_type=error_type,
                error_message=error_message[:2000],
                failed_at=utcnow(),
            ))
            db.flush()

            keep = (
                db.query(FailedJob.id)
                .order_by(FailedJob.failed_at.desc(), FailedJob.id.desc())
                .limit(self.failed_job_limit)
                .subquery()
            )
            db.query(FailedJob).filter(FailedJob.id.not_in(select(keep.c.id))).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def failed_jobs(self, limit: int = 100) -> List[FailedJob]:
        db = self._session_factory()
        try:
            rows = (
                db.query(FailedJob)
                .order_by(FailedJob.failed_at.desc(), FailedJob.id.desc())
                .limit(limit)
                .all()
            )
            for row in rows:
                db.expunge(row)
            return rows
        finally:
            db.close()

    def shutdown(self) -> None:
        """Stop ticking and enqueueing; in-flight handlers are left to finish."""
        self._accepting = False
        logger.info("[JOB_QUEUE] Scheduler shut down")

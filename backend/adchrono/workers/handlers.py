"""Queue handlers - the three polling workflows.

WHAT:
    Async consumers for the insights, structure and reconstruction queues.
    Each one runs the matching sync service in a worker thread with a
    tenant-bound session.

WHY:
    Service code is sync SQLAlchemy; `asyncio.to_thread` keeps the arq event
    loop free while it runs. The insights handler is the only place that
    enqueues reconstruction, one job per ingested record.

REFERENCES:
    - adchrono/services/insights_sync_service.py
    - adchrono/services/structure_sync_service.py
    - adchrono/services/timeseries_reconstruction_service.py
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adchrono.errors import DataIntegrityError
from adchrono.services import insights_sync_service, structure_sync_service
from adchrono.services import timeseries_reconstruction_service
from adchrono.tenancy import tenant_session
from adchrono.workers.job_queue import (
    QUEUE_INSIGHTS,
    QUEUE_RECONSTRUCTION,
    QUEUE_STRUCTURE,
    JobScheduler,
    reconstruction_dedup_key,
)

logger = logging.getLogger(__name__)


def _tenant_from(payload: Dict[str, Any]) -> UUID:
    try:
        return UUID(str(payload["tenant_id"]))
    except (KeyError, ValueError) as exc:
        raise DataIntegrityError(f"Job payload without a valid tenant_id: {payload!r}") from exc


class PollingJobHandlers:
    """Binds the polling workflows to a scheduler and a session factory."""

    def __init__(self, scheduler: JobScheduler, session_factory: Callable[[], Session]):
        self.scheduler = scheduler
        self.session_factory = session_factory

    def register(self) -> None:
        self.scheduler.process(QUEUE_INSIGHTS, self.handle_insights_polling)
        self.scheduler.process(QUEUE_STRUCTURE, self.handle_structure_polling)
        self.scheduler.process(QUEUE_RECONSTRUCTION, self.handle_reconstruction)

    def _run(self, tenant_id: UUID, fn, *args, **kwargs):
        with tenant_session(self.session_factory, tenant_id) as db:
            return fn(db, tenant_id, *args, **kwargs)

    async def handle_insights_polling(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = _tenant_from(payload)
        campaign_external_id: Optional[str] = payload.get("campaign_id")

        if campaign_external_id:
            ingestion = await asyncio.to_thread(
                self._run, tenant_id, insights_sync_service.fetch_and_ingest_insights, campaign_external_id,
            )
            ingested = [ingestion] if ingestion is not None else []
            errors = []
        else:
            result = await asyncio.to_thread(
                self._run, tenant_id, insights_sync_service.sync_all_active_campaigns,
            )
            ingested = result.ingested
            errors = result.errors

        for ingestion in ingested:
            await self.scheduler.enqueue_once(
                QUEUE_RECONSTRUCTION,
                {"tenant_id": str(tenant_id), "campaign_id": str(ingestion.campaign_id)},
                dedup_key=reconstruction_dedup_key(tenant_id, ingestion.campaign_id),
            )

        logger.info(
            "[INSIGHTS_POLL] Tenant %s: %d ingested, %d errors",
            tenant_id, len(ingested), len(errors),
        )
        return {"ingested": len(ingested), "errors": errors}

    async def handle_structure_polling(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = _tenant_from(payload)
        ad_account_id = payload.get("ad_account_id")
        if not ad_account_id:
            raise DataIntegrityError(f"Structure job without ad_account_id: {payload!r}")

        result = await asyncio.to_thread(
            self._run, tenant_id, structure_sync_service.sync_account_structure, ad_account_id,
        )
        return {
            "campaigns": result.campaigns,
            "ad_sets": result.ad_sets,
            "ads": result.ads,
            "errors": result.errors,
        }

    async def handle_reconstruction(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = _tenant_from(payload)
        try:
            campaign_id = UUID(str(payload["campaign_id"]))
        except (KeyError, ValueError) as exc:
            raise DataIntegrityError(f"Reconstruction job without campaign_id: {payload!r}") from exc

        result = await asyncio.to_thread(
            self._run, tenant_id, timeseries_reconstruction_service.reconstruct_incremental, campaign_id,
        )
        return {
            "points_created": result.points_created,
            "from": result.from_ts.isoformat() if result.from_ts else None,
            "to": result.to_ts.isoformat() if result.to_ts else None,
        }

"""Meta Ads synchronization endpoints.

WHAT:
    Thin HTTP wrappers for the structure and insights sync services, plus an
    endpoint that hands an immediate sync to the job queue.

WHY:
    - Routers handle request parsing and tenant binding only
    - Business logic is reused by both HTTP calls and background workers
    - Sync services use the blocking SDK and sync SQLAlchemy, so they run in
      the threadpool

REFERENCES:
    - adchrono/services/structure_sync_service.py
    - adchrono/services/insights_sync_service.py
    - adchrono/workers/polling_scheduler.py
"""

from __future__ import annotations

import logging
from typing import Union
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from adchrono.database import SessionLocal, get_tenant_db
from adchrono.schemas import (
    CampaignInsightsSyncResponse,
    InsightRef,
    InsightsSyncRequest,
    ObjectSyncCounts,
    ReconstructionSummary,
    StructureSyncRequest,
    StructureSyncResponse,
    SyncNowResponse,
    TenantInsightsSyncResponse,
)
from adchrono.services import insights_sync_service, structure_sync_service
from adchrono.services.timeseries_reconstruction_service import reconstruct_time_series
from adchrono.workers.arq_enqueue import get_job_scheduler
from adchrono.workers.job_queue import QUEUE_RECONSTRUCTION, reconstruction_dedup_key
from adchrono.workers.polling_scheduler import PollingScheduler, tenant_ad_account_ids

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tenants/{tenant_id}/meta",
    tags=["Meta Sync"],
)


@router.post("/sync-structure", response_model=StructureSyncResponse)
async def sync_structure(
    tenant_id: UUID,
    request: StructureSyncRequest,
    db: Session = Depends(get_tenant_db),
) -> StructureSyncResponse:
    """Snapshot campaigns, ad sets and ads of one ad account."""
    logger.info(
        "[META_SYNC] HTTP structure sync requested: tenant=%s account=%s",
        tenant_id,
        request.ad_account_id,
    )
    result = await run_in_threadpool(
        structure_sync_service.sync_account_structure, db, tenant_id, request.ad_account_id,
    )
    return StructureSyncResponse(
        success=result.success,
        campaigns=ObjectSyncCounts(**result.campaigns),
        ad_sets=ObjectSyncCounts(**result.ad_sets),
        ads=ObjectSyncCounts(**result.ads),
        errors=result.errors,
    )


@router.post("/sync-insights", response_model=None)
async def sync_insights(
    tenant_id: UUID,
    request: InsightsSyncRequest,
    db: Session = Depends(get_tenant_db),
) -> Union[CampaignInsightsSyncResponse, TenantInsightsSyncResponse]:
    """Fetch insights now.

    With `campaignId` the record is ingested and the campaign reconstructed
    inline. Without it every ACTIVE campaign is ingested and reconstruction
    is queued per campaign.
    """
    logger.info(
        "[META_SYNC] HTTP insights sync requested: tenant=%s campaign=%s",
        tenant_id,
        request.campaign_id or "all",
    )

    if request.campaign_id:
        ingestion = await run_in_threadpool(
            insights_sync_service.fetch_and_ingest_insights, db, tenant_id, request.campaign_id,
        )
        if ingestion is None:
            return CampaignInsightsSyncResponse()

        reconstruction = await run_in_threadpool(
            reconstruct_time_series, db, tenant_id, ingestion.campaign_id,
        )
        return CampaignInsightsSyncResponse(
            insight=InsightRef(id=ingestion.record_id, fetched_at=ingestion.fetched_at),
            reconstruction=ReconstructionSummary(
                points_created=reconstruction.points_created,
                from_=reconstruction.from_ts,
                to=reconstruction.to_ts,
            ),
        )

    result = await run_in_threadpool(insights_sync_service.sync_all_active_campaigns, db, tenant_id)

    scheduler = get_job_scheduler()
    queued = 0
    for ingestion in result.ingested:
        job_id = await scheduler.enqueue_once(
            QUEUE_RECONSTRUCTION,
            {"tenant_id": str(tenant_id), "campaign_id": str(ingestion.campaign_id)},
            dedup_key=reconstruction_dedup_key(tenant_id, ingestion.campaign_id),
        )
        if job_id is not None:
            queued += 1

    return TenantInsightsSyncResponse(
        synced=result.synced,
        errors=result.errors,
        reconstructions_queued=queued,
    )


@router.post("/sync-now", response_model=SyncNowResponse)
async def sync_now(tenant_id: UUID, db: Session = Depends(get_tenant_db)) -> SyncNowResponse:
    """Queue structure polls for every ad account and an insights poll right away."""
    logger.info("[META_SYNC] HTTP sync-now requested: tenant=%s", tenant_id)
    account_ids = await run_in_threadpool(tenant_ad_account_ids, db)
    polling = PollingScheduler(get_job_scheduler(), SessionLocal)
    job_ids = await polling.trigger_immediate_sync(tenant_id, ad_account_ids=account_ids)
    return SyncNowResponse(queued=bool(job_ids), job_ids=job_ids)

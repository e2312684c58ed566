"""Insights Sync Service - fetch provider insights into the raw ledger.

WHAT:
    Fetches daily insight buckets for one campaign (or every active campaign
    of a tenant) and appends them to the raw insight ledger as a versioned
    document.

WHY:
    Shared by the insights polling job and the HTTP sync endpoint. Each
    successfully ingested record is what triggers a reconstruction job.

REFERENCES:
    - adchrono/services/insight_ledger_service.py
    - adchrono/services/insight_payload.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adchrono.errors import DataIntegrityError, EntityNotFoundError, StorageError, UpstreamApiError
from adchrono.models import Campaign
from adchrono.services import insight_ledger_service
from adchrono.services.credential_vault import get_meta_api_config
from adchrono.services.insight_ledger_service import IngestionResult
from adchrono.services.insight_payload import build_insight_document
from adchrono.services.meta_ads_client import MetaAdsClient
from adchrono.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "ACTIVE"


@dataclass
class InsightsSyncResult:
    synced: int = 0
    ingested: List[IngestionResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def _find_campaign(db: Session, campaign_external_id: str) -> Campaign:
    campaign = db.query(Campaign).filter(Campaign.external_id == campaign_external_id).first()
    if campaign is None:
        raise EntityNotFoundError(f"Campaign {campaign_external_id} not found")
    return campaign


def _ingest_for_campaign(
    db: Session,
    tenant_id: UUID,
    campaign: Campaign,
    client: MetaAdsClient,
) -> Optional[IngestionResult]:
    buckets = client.fetch_daily_insights(campaign.external_id)
    if not buckets:
        logger.info("[INSIGHTS_SYNC] No insight data for campaign %s", campaign.external_id)
        return None

    fetched_at = utcnow()
    document = build_insight_document(campaign.external_id, fetched_at, buckets)
    return insight_ledger_service.ingest(db, tenant_id, campaign.id, document, fetched_at=fetched_at)


def fetch_and_ingest_insights(
    db: Session,
    tenant_id: UUID,
    campaign_external_id: str,
    *,
    client: Optional[MetaAdsClient] = None,
) -> Optional[IngestionResult]:
    """Fetch and store insights for one campaign; None if the provider had no data.

    Raises:
        ConfigurationError: Tenant has no Meta credentials.
        EntityNotFoundError: Campaign is unknown for this tenant.
        UpstreamApiError: Provider call failed.
    """
    if client is None:
        client = MetaAdsClient(get_meta_api_config(db, tenant_id))
    campaign = _find_campaign(db, campaign_external_id)
    return _ingest_for_campaign(db, tenant_id, campaign, client)


def sync_all_active_campaigns(
    db: Session,
    tenant_id: UUID,
    *,
    client: Optional[MetaAdsClient] = None,
) -> InsightsSyncResult:
    """Ingest insights for every ACTIVE campaign; failures are per campaign.

    Raises:
        ConfigurationError: Tenant has no Meta credentials.
        UpstreamApiError: The provider failed for every active campaign.
    """
    if client is None:
        client = MetaAdsClient(get_meta_api_config(db, tenant_id))

    campaigns = (
        db.query(Campaign)
        .filter(Campaign.status == ACTIVE_STATUS)
        .order_by(Campaign.external_id.asc())
        .all()
    )
    logger.info("[INSIGHTS_SYNC] Tenant %s: %d active campaigns", tenant_id, len(campaigns))

    result = InsightsSyncResult()
    upstream_failures = 0
    last_upstream_error: Optional[UpstreamApiError] = None
    for campaign in campaigns:
        try:
            ingestion = _ingest_for_campaign(db, tenant_id, campaign, client)
        except (UpstreamApiError, StorageError, DataIntegrityError) as exc:
            db.rollback()
            logger.warning("[INSIGHTS_SYNC] Campaign %s failed: %s", campaign.external_id, exc)
            result.errors.append(f"campaign {campaign.external_id}: {exc}")
            if isinstance(exc, UpstreamApiError):
                upstream_failures += 1
                last_upstream_error = exc
            continue
        result.synced += 1
        if ingestion is not None:
            result.ingested.append(ingestion)

    # Provider unreachable for every campaign: fail the call so the job is retried
    if campaigns and upstream_failures == len(campaigns):
        logger.error("[INSIGHTS_SYNC] Tenant %s: all %d campaigns failed upstream", tenant_id, len(campaigns))
        raise last_upstream_error

    return result

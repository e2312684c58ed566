"""Structure Sync Service - snapshot an ad account's campaign tree.

WHAT:
    Fetches campaigns of an ad account, then ad sets and ads per campaign,
    writes a structure snapshot for each object (only when it changed) and
    keeps the campaign / ad set / ad registry rows current.

WHY:
    - Used by both the structure polling job and the HTTP sync endpoint
    - One bad campaign must not block its siblings: its error is recorded in
      the result and the sync moves on

REFERENCES:
    - adchrono/services/structure_snapshot_service.py
    - adchrono/workers/handlers.py:handle_structure_polling
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adchrono.errors import DataIntegrityError, EntityNotFoundError, StorageError, UpstreamApiError
from adchrono.models import Ad, AdAccount, AdSet, Campaign, ObjectTypeEnum
from adchrono.services.credential_vault import get_meta_api_config
from adchrono.services.meta_ads_client import MetaAdsClient
from adchrono.services.structure_snapshot_service import create_snapshot_if_changed

logger = logging.getLogger(__name__)


class StructureSyncResult:
    """Counts per object type plus per-campaign error messages."""

    def __init__(self):
        self.campaigns = {"total": 0, "created": 0}
        self.ad_sets = {"total": 0, "created": 0}
        self.ads = {"total": 0, "created": 0}
        self.errors: List[str] = []

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def __repr__(self):
        return (
            f"StructureSyncResult(campaigns={self.campaigns}, ad_sets={self.ad_sets}, "
            f"ads={self.ads}, errors={len(self.errors)})"
        )


def _external_id(payload: Dict[str, Any], kind: str) -> str:
    external_id = payload.get("id")
    if not external_id:
        raise DataIntegrityError(f"{kind} payload without id")
    return str(external_id)


def _upsert_ad_account(db: Session, tenant_id: UUID, ad_account_id: str) -> AdAccount:
    account = db.query(AdAccount).filter(AdAccount.external_id == ad_account_id).first()
    if account is None:
        account = AdAccount(tenant_id=tenant_id, external_id=ad_account_id)
        db.add(account)
        db.commit()
    return account


def _upsert_campaign(db: Session, tenant_id: UUID, account: AdAccount, payload: Dict[str, Any]) -> Campaign:
    external_id = str(payload["id"])
    campaign = (
        db.query(Campaign)
        .filter(Campaign.ad_account_id == account.id, Campaign.external_id == external_id)
        .first()
    )
    if campaign is None:
        campaign = Campaign(tenant_id=tenant_id, ad_account_id=account.id, external_id=external_id)
        db.add(campaign)
    campaign.name = payload.get("name") or external_id
    campaign.status = payload.get("status") or "UNKNOWN"
    campaign.objective = payload.get("objective")
    db.commit()
    return campaign


def _upsert_ad_set(db: Session, tenant_id: UUID, campaign: Campaign, payload: Dict[str, Any]) -> None:
    external_id = str(payload["id"])
    ad_set = (
        db.query(AdSet)
        .filter(AdSet.campaign_id == campaign.id, AdSet.external_id == external_id)
        .first()
    )
    if ad_set is None:
        ad_set = AdSet(tenant_id=tenant_id, campaign_id=campaign.id, external_id=external_id)
        db.add(ad_set)
    ad_set.name = payload.get("name") or external_id
    ad_set.status = payload.get("status") or "UNKNOWN"
    db.commit()


def _upsert_ad(db: Session, tenant_id: UUID, campaign: Campaign, payload: Dict[str, Any]) -> None:
    external_id = str(payload["id"])
    ad = (
        db.query(Ad)
        .filter(Ad.campaign_id == campaign.id, Ad.external_id == external_id)
        .first()
    )
    if ad is None:
        ad = Ad(tenant_id=tenant_id, campaign_id=campaign.id, external_id=external_id)
        db.add(ad)
    ad.name = payload.get("name") or external_id
    ad.status = payload.get("status") or "UNKNOWN"
    ad.ad_set_external_id = payload.get("adset_id")
    db.commit()


def _sync_campaign_tree(
    db: Session,
    tenant_id: UUID,
    account: AdAccount,
    client: MetaAdsClient,
    payload: Dict[str, Any],
    result: StructureSyncResult,
) -> None:
    external_id = _external_id(payload, "campaign")

    snapshot = create_snapshot_if_changed(db, tenant_id, external_id, payload, ObjectTypeEnum.campaign)
    result.campaigns["total"] += 1
    if snapshot.created:
        result.campaigns["created"] += 1
    campaign = _upsert_campaign(db, tenant_id, account, payload)

    for ad_set_payload in client.fetch_ad_sets(external_id):
        ad_set_id = _external_id(ad_set_payload, "ad set")
        snapshot = create_snapshot_if_changed(db, tenant_id, ad_set_id, ad_set_payload, ObjectTypeEnum.adset)
        result.ad_sets["total"] += 1
        if snapshot.created:
            result.ad_sets["created"] += 1
        _upsert_ad_set(db, tenant_id, campaign, ad_set_payload)

    for ad_payload in client.fetch_ads(external_id):
        ad_id = _external_id(ad_payload, "ad")
        snapshot = create_snapshot_if_changed(db, tenant_id, ad_id, ad_payload, ObjectTypeEnum.ad)
        result.ads["total"] += 1
        if snapshot.created:
            result.ads["created"] += 1
        _upsert_ad(db, tenant_id, campaign, ad_payload)


def sync_account_structure(
    db: Session,
    tenant_id: UUID,
    ad_account_id: str,
    *,
    client: Optional[MetaAdsClient] = None,
) -> StructureSyncResult:
    """Snapshot every campaign, ad set and ad of an ad account.

    Raises:
        ConfigurationError: Tenant has no Meta credentials.
        UpstreamApiError: The campaign list itself could not be fetched.
    """
    if not ad_account_id:
        raise EntityNotFoundError("No ad account given for structure sync")

    if client is None:
        client = MetaAdsClient(get_meta_api_config(db, tenant_id))

    logger.info("[STRUCTURE_SYNC] Starting for tenant %s account %s", tenant_id, ad_account_id)
    account = _upsert_ad_account(db, tenant_id, ad_account_id)
    campaigns = client.fetch_structure(ad_account_id)

    result = StructureSyncResult()
    for payload in campaigns:
        try:
            _sync_campaign_tree(db, tenant_id, account, client, payload, result)
        except (UpstreamApiError, StorageError, DataIntegrityError) as exc:
            db.rollback()
            campaign_ref = payload.get("id", "<unknown>")
            logger.warning("[STRUCTURE_SYNC] Campaign %s failed: %s", campaign_ref, exc)
            result.errors.append(f"campaign {campaign_ref}: {exc}")

    logger.info("[STRUCTURE_SYNC] Done for tenant %s account %s: %r", tenant_id, ad_account_id, result)
    return result

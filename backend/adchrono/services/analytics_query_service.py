"""Analytics Query Service - read side over points and snapshots.

WHAT:
    Range queries over the dense time series (with optional decimation),
    window deltas, and joins of the series with the structure that was live
    at the time.

WHY:
    Routers stay thin; the same reads are usable from scripts and jobs.

RESOLUTION:
    second -> every stored point
    minute -> every 60th stored point in the window
    hour   -> every 3600th stored point in the window
    Decimation counts stored rows (row_number in SQL), not wall-clock
    buckets, so gaps in the series shift which points are kept.

REFERENCES:
    - adchrono/routers/analytics.py
    - adchrono/services/structure_snapshot_service.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from adchrono.errors import EntityNotFoundError
from adchrono.models import Campaign, ObjectTypeEnum, StructureSnapshot, TimeSeriesPoint
from adchrono.services import structure_snapshot_service
from adchrono.utils.timeutils import ensure_utc

logger = logging.getLogger(__name__)

RESOLUTION_STEPS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
}

ACTIVE_STATUS = "ACTIVE"


@dataclass(frozen=True)
class WindowMetrics:
    impressions: int
    spend: Decimal
    clicks: int
    reach: int
    duration_seconds: int


@dataclass
class StructureAtTime:
    campaign: Optional[Dict[str, Any]] = None
    ad_sets: List[Dict[str, Any]] = field(default_factory=list)
    ads: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TimeSeriesWithStructure:
    timeseries: List[TimeSeriesPoint]
    structure: StructureAtTime


@dataclass
class ActiveCampaignMetrics:
    campaign: Campaign
    latest_point: Optional[TimeSeriesPoint]


def get_campaign(db: Session, campaign_id: UUID) -> Campaign:
    campaign = db.query(Campaign).filter(Campaign.id == campaign_id).first()
    if campaign is None:
        raise EntityNotFoundError(f"Campaign {campaign_id} not found")
    return campaign


def _window_filter(campaign_id: UUID, from_ts: datetime, to_ts: datetime):
    return (
        TimeSeriesPoint.campaign_id == campaign_id,
        TimeSeriesPoint.ts >= ensure_utc(from_ts),
        TimeSeriesPoint.ts <= ensure_utc(to_ts),
    )


def get_time_series(
    db: Session,
    campaign_id: UUID,
    from_ts: datetime,
    to_ts: datetime,
    resolution: str = "second",
    limit: Optional[int] = None,
) -> List[TimeSeriesPoint]:
    """Points in [from_ts, to_ts] ordered by ts, decimated then limited."""
    if resolution not in RESOLUTION_STEPS:
        raise ValueError(f"Unknown resolution {resolution!r}; expected one of {sorted(RESOLUTION_STEPS)}")
    step = RESOLUTION_STEPS[resolution]
    conditions = _window_filter(campaign_id, from_ts, to_ts)

    if step == 1:
        stmt = select(TimeSeriesPoint).where(*conditions).order_by(TimeSeriesPoint.ts.asc())
    else:
        numbered = (
            select(
                TimeSeriesPoint.id.label("point_id"),
                func.row_number().over(order_by=TimeSeriesPoint.ts.asc()).label("rn"),
            )
            .where(*conditions)
            .subquery()
        )
        stmt = (
            select(TimeSeriesPoint)
            .join(numbered, numbered.c.point_id == TimeSeriesPoint.id)
            .where((numbered.c.rn - 1) % step == 0)
            .order_by(TimeSeriesPoint.ts.asc())
        )

    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())


def get_metrics_for_window(
    db: Session,
    campaign_id: UUID,
    from_ts: datetime,
    to_ts: datetime,
) -> Optional[WindowMetrics]:
    """Deltas between the first point at/after `from_ts` and the last at/before `to_ts`.

    Returns None when either boundary is missing, or when the window lies
    entirely inside a gap of the series (start boundary after end boundary).
    """
    first = db.scalars(
        select(TimeSeriesPoint)
        .where(TimeSeriesPoint.campaign_id == campaign_id, TimeSeriesPoint.ts >= ensure_utc(from_ts))
        .order_by(TimeSeriesPoint.ts.asc())
        .limit(1)
    ).first()
    last = db.scalars(
        select(TimeSeriesPoint)
        .where(TimeSeriesPoint.campaign_id == campaign_id, TimeSeriesPoint.ts <= ensure_utc(to_ts))
        .order_by(TimeSeriesPoint.ts.desc())
        .limit(1)
    ).first()
    if first is None or last is None:
        return None
    if ensure_utc(first.ts) > ensure_utc(last.ts):
        logger.info("[ANALYTICS] Campaign %s: window %s -> %s falls in a gap", campaign_id, from_ts, to_ts)
        return None

    return WindowMetrics(
        impressions=last.impressions_cum - first.impressions_cum,
        spend=Decimal(last.spend_cum) - Decimal(first.spend_cum),
        clicks=last.clicks_cum - first.clicks_cum,
        reach=last.reach_cum - first.reach_cum,
        duration_seconds=int((ensure_utc(last.ts) - ensure_utc(first.ts)).total_seconds()),
    )


def get_structure_at_time(
    db: Session,
    external_object_id: str,
    object_type: ObjectTypeEnum,
    ts: datetime,
) -> Optional[StructureSnapshot]:
    return structure_snapshot_service.get_at_time(db, external_object_id, ts, object_type)


def get_time_series_with_structure(
    db: Session,
    campaign_id: UUID,
    from_ts: datetime,
    to_ts: datetime,
) -> TimeSeriesWithStructure:
    """Series for the window plus the structure live at the window midpoint."""
    campaign = get_campaign(db, campaign_id)
    from_ts, to_ts = ensure_utc(from_ts), ensure_utc(to_ts)
    midpoint = from_ts + (to_ts - from_ts) / 2

    structure = StructureAtTime()
    snapshot = get_structure_at_time(db, campaign.external_id, ObjectTypeEnum.campaign, midpoint)
    if snapshot is not None:
        structure.campaign = snapshot.payload

    for ad_set in campaign.ad_sets:
        snapshot = get_structure_at_time(db, ad_set.external_id, ObjectTypeEnum.adset, midpoint)
        if snapshot is not None:
            structure.ad_sets.append(snapshot.payload)

    for ad in campaign.ads:
        snapshot = get_structure_at_time(db, ad.external_id, ObjectTypeEnum.ad, midpoint)
        if snapshot is not None:
            structure.ads.append(snapshot.payload)

    return TimeSeriesWithStructure(
        timeseries=get_time_series(db, campaign_id, from_ts, to_ts),
        structure=structure,
    )


def get_active_campaigns_with_metrics(db: Session, tenant_id: UUID) -> List[ActiveCampaignMetrics]:
    """Active campaigns of the tenant with their most recent point (if any)."""
    campaigns = (
        db.query(Campaign)
        .filter(Campaign.tenant_id == tenant_id, Campaign.status == ACTIVE_STATUS)
        .order_by(Campaign.name.asc())
        .all()
    )
    result = []
    for campaign in campaigns:
        latest = db.scalars(
            select(TimeSeriesPoint)
            .where(TimeSeriesPoint.campaign_id == campaign.id)
            .order_by(TimeSeriesPoint.ts.desc())
            .limit(1)
        ).first()
        result.append(ActiveCampaignMetrics(campaign=campaign, latest_point=latest))
    return result

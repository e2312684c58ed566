"""Analytics endpoints over the reconstructed time series and snapshots.

WHAT:
    Read-only routes: dense series (optionally decimated), window deltas,
    the series joined with the structure live at the time, point-in-time
    snapshots, and active campaigns with their latest values.

WHY:
    Thin wrappers; all reads live in `analytics_query_service` so jobs and
    scripts can reuse them.

REFERENCES:
    - adchrono/services/analytics_query_service.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Literal, Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from adchrono.database import get_tenant_db
from adchrono.models import ObjectTypeEnum, TimeSeriesPoint
from adchrono.schemas import (
    ActiveCampaignOut,
    ActiveCampaignsResponse,
    SnapshotOut,
    StructureOut,
    TimeSeriesPointOut,
    TimeSeriesResponse,
    TimeSeriesWithStructureResponse,
    WindowMetricsResponse,
)
from adchrono.services import analytics_query_service
from adchrono.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tenants/{tenant_id}/analytics",
    tags=["Analytics"],
)

DEFAULT_WINDOW = timedelta(hours=24)


def _resolve_window(from_ts: Optional[datetime], to_ts: Optional[datetime]) -> Tuple[datetime, datetime]:
    """Default to the last 24 hours; reject inverted windows."""
    to_ts = ensure_utc(to_ts) or utcnow()
    from_ts = ensure_utc(from_ts) or (to_ts - DEFAULT_WINDOW)
    if from_ts > to_ts:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")
    return from_ts, to_ts


def _point_out(point: TimeSeriesPoint) -> TimeSeriesPointOut:
    return TimeSeriesPointOut(
        ts=ensure_utc(point.ts),
        impressions_cum=point.impressions_cum,
        spend_cum=point.spend_cum,
        clicks_cum=point.clicks_cum,
        reach_cum=point.reach_cum,
        is_interpolated=point.is_interpolated,
    )


@router.get("/campaigns/active", response_model=ActiveCampaignsResponse)
def active_campaigns(
    tenant_id: UUID,
    db: Session = Depends(get_tenant_db),
) -> ActiveCampaignsResponse:
    rows = analytics_query_service.get_active_campaigns_with_metrics(db, tenant_id)
    return ActiveCampaignsResponse(
        campaigns=[
            ActiveCampaignOut(
                id=row.campaign.id,
                external_id=row.campaign.external_id,
                name=row.campaign.name,
                status=row.campaign.status,
                objective=row.campaign.objective,
                latest_point=_point_out(row.latest_point) if row.latest_point else None,
            )
            for row in rows
        ]
    )


@router.get("/campaigns/{campaign_id}/timeseries", response_model=TimeSeriesResponse)
def campaign_timeseries(
    tenant_id: UUID,
    campaign_id: UUID,
    from_ts: Optional[datetime] = Query(None, alias="from"),
    to_ts: Optional[datetime] = Query(None, alias="to"),
    resolution: Literal["second", "minute", "hour"] = Query("second"),
    limit: Optional[int] = Query(None, ge=1, le=100_000),
    db: Session = Depends(get_tenant_db),
) -> TimeSeriesResponse:
    """Cumulative per-second values in [from, to]."""
    from_ts, to_ts = _resolve_window(from_ts, to_ts)
    analytics_query_service.get_campaign(db, campaign_id)

    points = analytics_query_service.get_time_series(
        db, campaign_id, from_ts, to_ts, resolution=resolution, limit=limit,
    )
    return TimeSeriesResponse(
        campaign_id=campaign_id,
        resolution=resolution,
        from_=from_ts,
        to=to_ts,
        points=[_point_out(p) for p in points],
    )


@router.get(
    "/campaigns/{campaign_id}/timeseries-with-structure",
    response_model=TimeSeriesWithStructureResponse,
)
def campaign_timeseries_with_structure(
    tenant_id: UUID,
    campaign_id: UUID,
    from_ts: Optional[datetime] = Query(None, alias="from"),
    to_ts: Optional[datetime] = Query(None, alias="to"),
    db: Session = Depends(get_tenant_db),
) -> TimeSeriesWithStructureResponse:
    """Series plus the campaign / ad set / ad versions live at the window midpoint."""
    from_ts, to_ts = _resolve_window(from_ts, to_ts)
    result = analytics_query_service.get_time_series_with_structure(db, campaign_id, from_ts, to_ts)
    return TimeSeriesWithStructureResponse(
        campaign_id=campaign_id,
        from_=from_ts,
        to=to_ts,
        timeseries=[_point_out(p) for p in result.timeseries],
        structure=StructureOut(
            campaign=result.structure.campaign,
            ad_sets=result.structure.ad_sets,
            ads=result.structure.ads,
        ),
    )


@router.get("/campaigns/{campaign_id}/metrics", response_model=WindowMetricsResponse)
def campaign_metrics(
    tenant_id: UUID,
    campaign_id: UUID,
    from_ts: Optional[datetime] = Query(None, alias="from"),
    to_ts: Optional[datetime] = Query(None, alias="to"),
    db: Session = Depends(get_tenant_db),
) -> WindowMetricsResponse:
    """Deltas between the first and last point of the window."""
    from_ts, to_ts = _resolve_window(from_ts, to_ts)
    analytics_query_service.get_campaign(db, campaign_id)

    metrics = analytics_query_service.get_metrics_for_window(db, campaign_id, from_ts, to_ts)
    if metrics is None:
        raise HTTPException(status_code=404, detail="no data")
    return WindowMetricsResponse(
        campaign_id=campaign_id,
        from_=from_ts,
        to=to_ts,
        impressions=metrics.impressions,
        spend=metrics.spend,
        clicks=metrics.clicks,
        reach=metrics.reach,
        duration_seconds=metrics.duration_seconds,
    )


@router.get("/snapshots/{object_type}/{external_object_id}", response_model=SnapshotOut)
def snapshot_at_time(
    tenant_id: UUID,
    object_type: ObjectTypeEnum,
    external_object_id: str,
    ts: Optional[datetime] = Query(None, description="Point in time; defaults to now"),
    db: Session = Depends(get_tenant_db),
) -> SnapshotOut:
    """The snapshot version whose validity interval contains `ts`."""
    ts = ensure_utc(ts) or utcnow()
    snapshot = analytics_query_service.get_structure_at_time(db, external_object_id, object_type, ts)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="no snapshot at that time")
    return SnapshotOut(
        id=snapshot.id,
        object_type=ObjectTypeEnum(snapshot.object_type).value,
        external_object_id=snapshot.external_object_id,
        version=snapshot.version,
        payload=snapshot.payload,
        valid_from=ensure_utc(snapshot.valid_from),
        valid_to=ensure_utc(snapshot.valid_to),
    )

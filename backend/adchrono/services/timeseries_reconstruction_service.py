"""Time-Series Reconstruction Service - dense per-second cumulative series.

WHAT:
    Walks a campaign's raw insight records in fetched_at order and, for every
    adjacent pair, writes one point per elapsed second with linearly
    interpolated cumulative counters.

WHY:
    - Provider data arrives every few minutes, dashboards want a smooth line
    - Points are only ever inserted with conflict-skip on (campaign_id, ts),
      so running the same window twice (or overlapping windows) is harmless
    - Points are generated lazily and written in fixed-size chunks, so a
      week-long gap never materializes in memory

INTERPOLATION:
    For anchors t1 < t2 (floored to whole seconds), elapsed = t2 - t1 seconds:
        value(i) = v1 + (v2 - v1) * i / elapsed       for i in 0..elapsed
    Integer counters are floored, spend stays fractional. i = 0 and
    i = elapsed are the real observations (is_interpolated = False).
    Decreasing upstream counters produce decreasing points; nothing is
    clamped.

REFERENCES:
    - Model: adchrono/models.py:TimeSeriesPoint
    - Payload schema: adchrono/services/insight_payload.py
    - Trigger: adchrono/workers/handlers.py:handle_reconstruction
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from itertools import islice
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adchrono.deps import get_settings
from adchrono.errors import DataIntegrityError, StorageError, TenantScopeError
from adchrono.models import RawInsightRecord, TimeSeriesPoint
from adchrono.services import insight_ledger_service
from adchrono.services.insight_payload import InsightMetrics, extract_metrics
from adchrono.tenancy import current_tenant
from adchrono.utils.timeutils import ensure_utc, floor_to_second, utcnow

logger = logging.getLogger(__name__)

SPEND_QUANTUM = Decimal("0.000001")

# (record id, anchor second, metrics)
Anchor = Tuple[UUID, datetime, InsightMetrics]


@dataclass(frozen=True)
class ReconstructionResult:
    points_created: int
    from_ts: Optional[datetime]
    to_ts: Optional[datetime]


def interpolate_pair(
    tenant_id: UUID,
    campaign_id: UUID,
    start: Anchor,
    end: Anchor,
) -> Iterator[Dict[str, Any]]:
    """Yield point rows for one pair of anchors; nothing if elapsed <= 0."""
    start_id, t1, m1 = start
    end_id, t2, m2 = end

    elapsed = int((t2 - t1).total_seconds())
    if elapsed <= 0:
        return

    d_impressions = m2.impressions - m1.impressions
    d_clicks = m2.clicks - m1.clicks
    d_reach = m2.reach - m1.reach
    d_spend = m2.spend - m1.spend

    for i in range(elapsed + 1):
        if i == 0:
            source_id = start_id
        elif i == elapsed:
            source_id = end_id
        else:
            source_id = None
        yield {
            "id": uuid.uuid4(),
            "tenant_id": tenant_id,
            "campaign_id": campaign_id,
            "ts": t1 + timedelta(seconds=i),
            # Floor division keeps integer counters exact (and floors negatives)
            "impressions_cum": m1.impressions + (d_impressions * i) // elapsed,
            "clicks_cum": m1.clicks + (d_clicks * i) // elapsed,
            "reach_cum": m1.reach + (d_reach * i) // elapsed,
            "spend_cum": (m1.spend + d_spend * i / elapsed).quantize(SPEND_QUANTUM),
            "is_interpolated": source_id is None,
            "source_insight_id": source_id,
        }


def generate_points(
    tenant_id: UUID,
    campaign_id: UUID,
    records: Iterable[RawInsightRecord],
) -> Iterator[Dict[str, Any]]:
    """Yield rows for every adjacent pair of records (records must be ordered).

    A record whose payload cannot be parsed breaks the chain: neither the pair
    ending at it nor the pair starting at it produces points.
    """
    previous: Optional[Anchor] = None
    for record in records:
        try:
            metrics = extract_metrics(record.payload)
        except DataIntegrityError as exc:
            logger.warning("[RECONSTRUCT] Skipping record %s: %s", record.id, exc)
            previous = None
            continue

        current: Anchor = (record.id, floor_to_second(record.fetched_at), metrics)
        if previous is not None:
            yield from interpolate_pair(tenant_id, campaign_id, previous, current)
        previous = current


def _chunks(rows: Iterable[Dict[str, Any]], size: int) -> Iterator[List[Dict[str, Any]]]:
    iterator = iter(rows)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


def _insert_ignoring_conflicts(db: Session, rows: List[Dict[str, Any]]) -> None:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageError(f"Conflict-skipping inserts are not supported on {dialect}")

    stmt = insert(TimeSeriesPoint.__table__).on_conflict_do_nothing(
        index_elements=["campaign_id", "ts"],
    )
    db.connection().execute(stmt, rows)


def reconstruct_time_series(
    db: Session,
    tenant_id: UUID,
    campaign_id: UUID,
    from_ts: Optional[datetime] = None,
    to_ts: Optional[datetime] = None,
    *,
    batch_size: Optional[int] = None,
) -> ReconstructionResult:
    """Rebuild points for records fetched within [from_ts, to_ts].

    Each chunk is committed on its own; if a later chunk fails, earlier ones
    stay valid and a rerun fills in the rest.

    Raises:
        StorageError: A chunk failed to commit.
    """
    bound = current_tenant(db)
    if bound is not None and bound != tenant_id:
        raise TenantScopeError(f"Session is bound to {bound}, not {tenant_id}")

    batch_size = batch_size or get_settings().RECONSTRUCTION_BATCH_SIZE
    records = insight_ledger_service.query(db, campaign_id, from_ts, to_ts)

    if len(records) < 2:
        logger.info(
            "[RECONSTRUCT] Campaign %s: %d record(s) in window, nothing to interpolate",
            campaign_id, len(records),
        )
        return ReconstructionResult(points_created=0, from_ts=ensure_utc(from_ts), to_ts=ensure_utc(to_ts))

    window_start = ensure_utc(records[0].fetched_at)
    window_end = ensure_utc(records[-1].fetched_at)

    points_created = 0
    for chunk in _chunks(generate_points(tenant_id, campaign_id, records), batch_size):
        try:
            _insert_ignoring_conflicts(db, chunk)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "[RECONSTRUCT] Chunk failed for campaign %s after %d points: %s",
                campaign_id, points_created, exc,
            )
            raise StorageError(f"Failed to persist time series for campaign {campaign_id}") from exc
        points_created += len(chunk)

    logger.info(
        "[RECONSTRUCT] Campaign %s: %d points from %d records (%s -> %s)",
        campaign_id, points_created, len(records), window_start, window_end,
    )
    return ReconstructionResult(points_created=points_created, from_ts=window_start, to_ts=window_end)


def get_latest_timestamp(db: Session, campaign_id: UUID) -> Optional[datetime]:
    latest = (
        db.query(func.max(TimeSeriesPoint.ts))
        .filter(TimeSeriesPoint.campaign_id == campaign_id)
        .scalar()
    )
    return ensure_utc(latest)


def reconstruct_incremental(db: Session, tenant_id: UUID, campaign_id: UUID) -> ReconstructionResult:
    """Reconstruct [latest persisted point, now]; everything if no points yet."""
    from_ts = get_latest_timestamp(db, campaign_id)
    return reconstruct_time_series(db, tenant_id, campaign_id, from_ts=from_ts, to_ts=utcnow())

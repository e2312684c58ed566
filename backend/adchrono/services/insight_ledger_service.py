"""Raw Insight Ledger - append-only store of fetched insights payloads.

WHAT:
    Appends every fetched insights document, unconditionally, and serves
    ordered range reads to the reconstructor.

WHY:
    Keeping the raw documents (duplicates included) means the dense time
    series can always be rebuilt from scratch.

REFERENCES:
    - Model: adchrono/models.py:RawInsightRecord
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adchrono.errors import StorageError
from adchrono.models import RawInsightRecord
from adchrono.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionResult:
    record_id: UUID
    campaign_id: UUID
    fetched_at: datetime


def ingest(
    db: Session,
    tenant_id: UUID,
    campaign_id: UUID,
    payload: Dict[str, Any],
    *,
    fetched_at: Optional[datetime] = None,
) -> IngestionResult:
    """Append one raw record; identical payloads are stored again."""
    fetched_at = ensure_utc(fetched_at) or utcnow()
    record = RawInsightRecord(
        tenant_id=tenant_id,
        campaign_id=campaign_id,
        fetched_at=fetched_at,
        payload=payload,
    )
    try:
        db.add(record)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"Could not append insight record for campaign {campaign_id}") from exc

    logger.info("[INSIGHT_LEDGER] Ingested record %s for campaign %s", record.id, campaign_id)
    return IngestionResult(record_id=record.id, campaign_id=campaign_id, fetched_at=fetched_at)


def query(
    db: Session,
    campaign_id: UUID,
    from_ts: Optional[datetime] = None,
    to_ts: Optional[datetime] = None,
) -> List[RawInsightRecord]:
    """Records with from_ts <= fetched_at <= to_ts, oldest first."""
    q = db.query(RawInsightRecord).filter(RawInsightRecord.campaign_id == campaign_id)
    if from_ts is not None:
        q = q.filter(RawInsightRecord.fetched_at >= ensure_utc(from_ts))
    if to_ts is not None:
        q = q.filter(RawInsightRecord.fetched_at <= ensure_utc(to_ts))
    return q.order_by(RawInsightRecord.fetched_at.asc(), RawInsightRecord.id.asc()).all()


def latest(db: Session, campaign_id: UUID, limit: int = 10) -> List[RawInsightRecord]:
    return (
        db.query(RawInsightRecord)
        .filter(RawInsightRecord.campaign_id == campaign_id)
        .order_by(RawInsightRecord.fetched_at.desc())
        .limit(limit)
        .all()
    )

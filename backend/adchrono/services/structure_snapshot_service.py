"""Structure Snapshot Service - versioned history of campaign structure.

WHAT:
    Stores campaign / ad set / ad documents as SCD Type 2 rows: a new version
    is written only when the fetched document differs from the currently open
    one, and the previous version is closed at the same instant.

WHY:
    - Analytics can show what a campaign looked like at any moment
    - Polling every 10 minutes without creating a row per poll
    - History is never rewritten, only appended to

COMPARISON MODES:
    - canonical (default): structural equality, key order is irrelevant
    - serialized: compact JSON strings compared as-is, so two documents that
      only differ in key order count as a change

REFERENCES:
    - Model: adchrono/models.py:StructureSnapshot
    - Consumer: adchrono/services/analytics_query_service.py
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adchrono.deps import get_settings
from adchrono.errors import StorageError
from adchrono.models import ObjectTypeEnum, StructureSnapshot
from adchrono.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of `create_snapshot_if_changed`; reason is new / changed / unchanged."""

    created: bool
    snapshot_id: UUID
    reason: str
    version: int


def payloads_equal(current: Any, candidate: Any, mode: Optional[str] = None) -> bool:
    mode = mode or get_settings().SNAPSHOT_COMPARISON
    if mode == "serialized":
        return json.dumps(current, separators=(",", ":")) == json.dumps(candidate, separators=(",", ":"))
    return current == candidate


def get_open_snapshot(
    db: Session,
    external_object_id: str,
    object_type: ObjectTypeEnum = ObjectTypeEnum.campaign,
    *,
    for_update: bool = False,
) -> Optional[StructureSnapshot]:
    query = (
        db.query(StructureSnapshot)
        .filter(
            StructureSnapshot.object_type == object_type,
            StructureSnapshot.external_object_id == external_object_id,
            StructureSnapshot.valid_to.is_(None),
        )
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def create_snapshot_if_changed(
    db: Session,
    tenant_id: UUID,
    external_object_id: str,
    payload: Dict[str, Any],
    object_type: ObjectTypeEnum = ObjectTypeEnum.campaign,
    *,
    now: Optional[datetime] = None,
    comparison: Optional[str] = None,
) -> SnapshotResult:
    """Write a new snapshot version only if the document changed.

    Closing the previous version and opening the next one happen in a single
    transaction: either both rows are written or neither is.

    Raises:
        StorageError: The transaction failed and was rolled back.
    """
    now = ensure_utc(now) or utcnow()

    try:
        current = get_open_snapshot(db, external_object_id, object_type, for_update=True)

        if current is not None and payloads_equal(current.payload, payload, comparison):
            return SnapshotResult(created=False, snapshot_id=current.id, reason="unchanged", version=current.version)

        version = 1
        reason = "new"
        if current is not None:
            current.valid_to = now
            version = current.version + 1
            reason = "changed"
            # Close before insert so the open-row unique index never sees two open rows
            db.flush()

        snapshot = StructureSnapshot(
            tenant_id=tenant_id,
            object_type=object_type,
            external_object_id=external_object_id,
            version=version,
            payload=payload,
            valid_from=now,
            valid_to=None,
        )
        db.add(snapshot)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "[SNAPSHOT_STORE] Failed to write %s %s: %s",
            object_type.value, external_object_id, exc,
        )
        raise StorageError(f"Could not persist snapshot for {object_type.value} {external_object_id}") from exc

    logger.info(
        "[SNAPSHOT_STORE] %s %s -> v%d (%s)",
        object_type.value, external_object_id, version, reason,
    )
    return SnapshotResult(created=True, snapshot_id=snapshot.id, reason=reason, version=version)


def get_at_time(
    db: Session,
    external_object_id: str,
    ts: datetime,
    object_type: ObjectTypeEnum = ObjectTypeEnum.campaign,
) -> Optional[StructureSnapshot]:
    """Return the version whose [valid_from, valid_to) interval contains ts."""
    ts = ensure_utc(ts)
    return (
        db.query(StructureSnapshot)
        .filter(
            StructureSnapshot.object_type == object_type,
            StructureSnapshot.external_object_id == external_object_id,
            StructureSnapshot.valid_from <= ts,
            or_(StructureSnapshot.valid_to.is_(None), StructureSnapshot.valid_to > ts),
        )
        .order_by(StructureSnapshot.valid_from.desc())
        .first()
    )


def list_versions(
    db: Session,
    external_object_id: str,
    object_type: ObjectTypeEnum = ObjectTypeEnum.campaign,
) -> list[StructureSnapshot]:
    return (
        db.query(StructureSnapshot)
        .filter(
            StructureSnapshot.object_type == object_type,
            StructureSnapshot.external_object_id == external_object_id,
        )
        .order_by(StructureSnapshot.version.asc())
        .all()
    )

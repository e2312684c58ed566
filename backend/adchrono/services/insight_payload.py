"""Versioned document model for raw insight payloads.

WHAT:
    Pydantic models describing what the raw insight ledger stores, plus the
    metric extraction the reconstructor runs over each record.

WHY:
    The ledger keeps provider data verbatim, but reconstruction needs numbers.
    Validating against an explicit schema (instead of poking into nested
    dicts) turns malformed provider output into a single, loggable
    `DataIntegrityError` per record.

DOCUMENT (schema_version 1):
    {
        "schema_version": 1,
        "campaign_id": "<provider campaign id>",
        "fetched_at": "<ISO-8601>",
        "insights": [
            {"impressions": "1000", "spend": "12.5", "reach": "800",
             "actions": [{"action_type": "link_click", "value": "40"}]}
        ]
    }

REFERENCES:
    - adchrono/services/insights_sync_service.py (writer)
    - adchrono/services/timeseries_reconstruction_service.py (reader)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from adchrono.errors import DataIntegrityError

SCHEMA_VERSION = 1
CLICK_ACTION_TYPE = "link_click"


class InsightAction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action_type: str
    value: Decimal = Decimal(0)


class InsightBucket(BaseModel):
    """One daily bucket as returned by the insights endpoint (string counters)."""

    model_config = ConfigDict(extra="ignore")

    impressions: int = 0
    spend: Decimal = Decimal(0)
    reach: int = 0
    actions: List[InsightAction] = Field(default_factory=list)

    @field_validator("impressions", "reach", mode="before")
    @classmethod
    def _parse_counter(cls, value: Any) -> Any:
        # Provider sends "1234"; missing / null means zero
        if value is None or value == "":
            return 0
        return value

    @field_validator("spend", mode="before")
    @classmethod
    def _parse_spend(cls, value: Any) -> Any:
        if value is None or value == "":
            return Decimal(0)
        return value

    @property
    def clicks(self) -> int:
        return int(sum(a.value for a in self.actions if a.action_type == CLICK_ACTION_TYPE))


class InsightPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION
    campaign_id: str
    fetched_at: Optional[datetime] = None
    insights: List[InsightBucket] = Field(default_factory=list)


@dataclass(frozen=True)
class InsightMetrics:
    """Cumulative counters extracted from one raw insight record."""

    impressions: int
    spend: Decimal
    clicks: int
    reach: int


def build_insight_document(campaign_external_id: str, fetched_at: datetime, buckets: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Shape a provider response into the stored ledger document."""
    return {
        "schema_version": SCHEMA_VERSION,
        "campaign_id": campaign_external_id,
        "fetched_at": fetched_at.isoformat(),
        "insights": buckets,
    }


def parse_insight_payload(payload: Any) -> InsightPayload:
    """Validate a stored document.

    Raises:
        DataIntegrityError: Not a schema_version 1 insight document.
    """
    try:
        document = InsightPayload.model_validate(payload)
    except ValidationError as exc:
        raise DataIntegrityError(f"Malformed insight payload: {exc.error_count()} validation errors") from exc
    if document.schema_version != SCHEMA_VERSION:
        raise DataIntegrityError(f"Unsupported insight payload schema_version {document.schema_version}")
    return document


def extract_metrics(payload: Any) -> InsightMetrics:
    """Sum all buckets of a document into cumulative counters.

    Clicks only count `link_click` actions.

    Raises:
        DataIntegrityError: Payload is malformed or has no buckets.
    """
    document = parse_insight_payload(payload)
    if not document.insights:
        raise DataIntegrityError(f"Insight payload for campaign {document.campaign_id} has no buckets")

    impressions = 0
    spend = Decimal(0)
    clicks = 0
    reach = 0
    for bucket in document.insights:
        impressions += bucket.impressions
        spend += bucket.spend
        clicks += bucket.clicks
        reach += bucket.reach

    return InsightMetrics(impressions=impressions, spend=spend, clicks=clicks, reach=reach)

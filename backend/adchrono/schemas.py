"""Pydantic schemas for request/response payloads.

All bodies use camelCase on the wire (`adAccountId`, `pointsCreated`) while
Python code keeps snake_case attribute names.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for every API body: camelCase aliases, snake_case population allowed."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# META SYNC
# =============================================================================

class StructureSyncRequest(CamelModel):
    ad_account_id: str = Field(
        description="Meta ad account id, with or without the act_ prefix",
        examples=["act_1234567890"],
    )


class ObjectSyncCounts(CamelModel):
    total: int = 0
    created: int = Field(0, description="Snapshots created (new or changed objects)")


class StructureSyncResponse(CamelModel):
    success: bool
    campaigns: ObjectSyncCounts
    ad_sets: ObjectSyncCounts
    ads: ObjectSyncCounts
    errors: List[str] = Field(default_factory=list)


class InsightsSyncRequest(CamelModel):
    campaign_id: Optional[str] = Field(
        None,
        description="Meta campaign id; omit to sync every ACTIVE campaign",
    )


class InsightRef(CamelModel):
    id: UUID
    fetched_at: datetime


class ReconstructionSummary(CamelModel):
    points_created: int
    from_: Optional[datetime] = Field(None, alias="from")
    to: Optional[datetime] = None


class CampaignInsightsSyncResponse(CamelModel):
    """Single campaign: the stored record and the inline reconstruction."""

    insight: Optional[InsightRef] = None
    reconstruction: Optional[ReconstructionSummary] = None


class TenantInsightsSyncResponse(CamelModel):
    """All active campaigns: counts only, reconstruction runs on the queue."""

    synced: int
    errors: List[str] = Field(default_factory=list)
    reconstructions_queued: int = 0


class SyncNowResponse(CamelModel):
    queued: bool
    job_ids: List[str] = Field(default_factory=list)


# =============================================================================
# ANALYTICS
# =============================================================================

class TimeSeriesPointOut(CamelModel):
    ts: datetime
    impressions_cum: int
    spend_cum: Decimal
    clicks_cum: int
    reach_cum: int
    is_interpolated: bool

    @field_serializer("spend_cum")
    def serialize_spend(self, value: Decimal) -> float:
        return float(value)


class TimeSeriesResponse(CamelModel):
    campaign_id: UUID
    resolution: str
    from_: datetime = Field(alias="from")
    to: datetime
    points: List[TimeSeriesPointOut]


class StructureOut(CamelModel):
    campaign: Optional[Dict[str, Any]] = None
    ad_sets: List[Dict[str, Any]] = Field(default_factory=list)
    ads: List[Dict[str, Any]] = Field(default_factory=list)


class TimeSeriesWithStructureResponse(CamelModel):
    campaign_id: UUID
    from_: datetime = Field(alias="from")
    to: datetime
    timeseries: List[TimeSeriesPointOut]
    structure: StructureOut


class WindowMetricsResponse(CamelModel):
    campaign_id: UUID
    from_: datetime = Field(alias="from")
    to: datetime
    impressions: int
    spend: Decimal
    clicks: int
    reach: int
    duration_seconds: int

    @field_serializer("spend")
    def serialize_spend(self, value: Decimal) -> float:
        return float(value)


class SnapshotOut(CamelModel):
    id: UUID
    object_type: str
    external_object_id: str
    version: int
    payload: Dict[str, Any]
    valid_from: datetime
    valid_to: Optional[datetime] = None


class ActiveCampaignOut(CamelModel):
    id: UUID
    external_id: str
    name: Optional[str] = None
    status: Optional[str] = None
    objective: Optional[str] = None
    latest_point: Optional[TimeSeriesPointOut] = None


class ActiveCampaignsResponse(CamelModel):
    campaigns: List[ActiveCampaignOut]


# =============================================================================
# MISC
# =============================================================================

class ErrorResponse(BaseModel):
    """Error body used by the AdChronoError exception handler."""

    detail: str = Field(description="Human readable error message")
    error_type: str = Field(description="Exception class name")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"],
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }

"""SQLAlchemy ORM models and enums.

This module defines the temporal schema using UUID primary keys and explicit
relationships. Every table that holds tenant data inherits
`TenantScopedMixin`, which is what `adchrono.tenancy` keys off to keep one
tenant from ever reading or writing another tenant's rows.

REFERENCES:
    - Migration: alembic/versions/20261019_000001_temporal_schema.py
    - Tenant scoping: adchrono/tenancy.py
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import declarative_base, declared_attr, relationship


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"


class ObjectTypeEnum(str, enum.Enum):
    """Kind of external object a structure snapshot describes."""
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


# Mixins --------------------------------------------------------

class TenantScopedMixin:
    """Marks a model as tenant data.

    Sessions bound to a tenant only ever see rows of that tenant; see
    `adchrono.tenancy` for the enforcement.
    """

    @declared_attr
    def tenant_id(cls):
        return Column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)


# Tenancy & registry --------------------------------------------

class Tenant(Base):
    """Tenant represents one customer organisation.

    Polling intervals are optional overrides; null means "use the configured
    default" (insights every 2 minutes, structure every 10 minutes).
    """
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    insights_poll_interval_ms = Column(Integer, nullable=True)
    structure_poll_interval_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def __str__(self):
        return self.name


class ProviderCredential(TenantScopedMixin, Base):
    """Encrypted provider secrets for a tenant.

    `secrets_enc` is a Fernet ciphertext of a JSON object that holds at least
    `access_token`. Decryption happens only in
    `adchrono.services.credential_vault`.
    """
    __tablename__ = "provider_credentials"
    __table_args__ = (UniqueConstraint("tenant_id", "provider", name="uq_provider_credential_tenant_provider"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider = Column(Enum(ProviderEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    secrets_enc = Column(Text, nullable=False)
    external_account_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class AdAccount(TenantScopedMixin, Base):
    """An advertising account on the provider side (Meta `act_<id>`)."""
    __tablename__ = "ad_accounts"
    __table_args__ = (UniqueConstraint("tenant_id", "external_id", name="uq_ad_account_tenant_external"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    campaigns = relationship("Campaign", back_populates="ad_account")


class Campaign(TenantScopedMixin, Base):
    """Current-state registry row for a campaign.

    History lives in `StructureSnapshot`; this row only carries the latest
    name/status so insights polling knows which campaigns are active.
    """
    __tablename__ = "campaigns"
    __table_args__ = (UniqueConstraint("ad_account_id", "external_id", name="uq_campaign_account_external"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ad_account_id = Column(Uuid, ForeignKey("ad_accounts.id"), nullable=False)
    external_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)  # ACTIVE, PAUSED, ARCHIVED, ...
    objective = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    ad_account = relationship("AdAccount", back_populates="campaigns")
    ad_sets = relationship("AdSet", back_populates="campaign", order_by="AdSet.external_id")
    ads = relationship("Ad", back_populates="campaign", order_by="Ad.external_id")

    def __str__(self):
        return f"{self.name} ({self.external_id})"


class AdSet(TenantScopedMixin, Base):
    __tablename__ = "ad_sets"
    __table_args__ = (UniqueConstraint("campaign_id", "external_id", name="uq_ad_set_campaign_external"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id = Column(Uuid, ForeignKey("campaigns.id"), nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    campaign = relationship("Campaign", back_populates="ad_sets")


class Ad(TenantScopedMixin, Base):
    __tablename__ = "ads"
    __table_args__ = (UniqueConstraint("campaign_id", "external_id", name="uq_ad_campaign_external"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id = Column(Uuid, ForeignKey("campaigns.id"), nullable=False)
    ad_set_external_id = Column(String, nullable=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    campaign = relationship("Campaign", back_populates="ads")


# Temporal stores -----------------------------------------------

class StructureSnapshot(TenantScopedMixin, Base):
    """One version of an external object's structure (SCD Type 2 row).

    WHAT:
        `payload` is the provider document as fetched. `valid_to` is null for
        the open (current) version.
    WHY:
        Lets analytics answer "what did this campaign look like at time T".
    INVARIANTS:
        - At most one open row per (tenant, object_type, external_object_id),
          enforced by the partial unique index below.
        - Versions start at 1 and strictly increase.
        - A closed row's valid_to equals its successor's valid_from.
    """
    __tablename__ = "structure_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "object_type", "external_object_id", "version",
            name="uq_structure_snapshot_version",
        ),
        Index(
            "uq_structure_snapshot_open",
            "tenant_id", "object_type", "external_object_id",
            unique=True,
            postgresql_where=text("valid_to IS NULL"),
            sqlite_where=text("valid_to IS NULL"),
        ),
        Index("ix_structure_snapshot_lookup", "external_object_id", "object_type", "valid_from"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    object_type = Column(Enum(ObjectTypeEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    external_object_id = Column(String, nullable=False)
    version = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)
    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_to = Column(DateTime(timezone=True), nullable=True)

    def __str__(self):
        return f"{self.object_type.value}:{self.external_object_id} v{self.version}"


class RawInsightRecord(TenantScopedMixin, Base):
    """Append-only ledger entry: one insights payload as fetched.

    Never updated or deleted. The payload is the versioned document built by
    `adchrono.services.insight_payload.build_insight_document`.
    """
    __tablename__ = "raw_insight_records"
    __table_args__ = (Index("ix_raw_insight_campaign_fetched", "campaign_id", "fetched_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id = Column(Uuid, ForeignKey("campaigns.id"), nullable=False)
    fetched_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)


class TimeSeriesPoint(TenantScopedMixin, Base):
    """Per-second cumulative counter values for a campaign.

    Rows are inserted with conflict-skip on (campaign_id, ts) and never
    mutated, which is what makes reconstruction idempotent.
    """
    __tablename__ = "time_series_points"
    __table_args__ = (UniqueConstraint("campaign_id", "ts", name="uq_time_series_point_campaign_ts"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id = Column(Uuid, ForeignKey("campaigns.id"), nullable=False)
    ts = Column(DateTime(timezone=True), nullable=False)
    impressions_cum = Column(Integer, nullable=False)
    spend_cum = Column(Numeric(18, 6), nullable=False)
    clicks_cum = Column(Integer, nullable=False)
    reach_cum = Column(Integer, nullable=False)
    is_interpolated = Column(Boolean, nullable=False, default=True)
    source_insight_id = Column(Uuid, ForeignKey("raw_insight_records.id"), nullable=True)


# Scheduling ----------------------------------------------------

class PollingJobDefinition(Base):
    """Repeating job definition keyed by a deduplication key.

    Scheduling the same key again replaces the row; the arq cron tick reads
    `next_run_at` to decide which definitions are due.
    """
    __tablename__ = "polling_job_definitions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    queue_name = Column(String, nullable=False)
    dedup_key = Column(String, nullable=False, unique=True)
    interval_ms = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)
    next_run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class FailedJob(Base):
    """Jobs that exhausted their retries (or were not retryable).

    Bounded history: the scheduler prunes everything beyond the newest
    `FAILED_JOB_HISTORY_LIMIT` rows after each insert.
    """
    __tablename__ = "failed_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    queue_name = Column(String, nullable=False)
    dedup_key = Column(String, nullable=True)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False)
    error_type = Column(String, nullable=False)
    error_message = Column(Text, nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

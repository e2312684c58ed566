"""Tests for the append-only raw insight ledger."""

from datetime import timedelta

from adchrono.models import RawInsightRecord
from adchrono.services import insight_ledger_service as ledger
from adchrono.tenancy import tenant_session
from adchrono.utils.timeutils import ensure_utc

from conftest import T0


def test_ingest_appends_identical_payloads(db, tenant_id, campaign, insight_doc):
    doc = insight_doc(impressions=100, spend="1.50")

    first = ledger.ingest(db, tenant_id, campaign.id, doc, fetched_at=T0)
    second = ledger.ingest(db, tenant_id, campaign.id, doc, fetched_at=T0 + timedelta(minutes=2))

    assert first.record_id != second.record_id
    assert db.query(RawInsightRecord).count() == 2


def test_ingest_defaults_fetched_at_to_now(db, tenant_id, campaign, insight_doc):
    result = ledger.ingest(db, tenant_id, campaign.id, insight_doc(impressions=1))

    assert result.fetched_at.tzinfo is not None
    record = db.get(RawInsightRecord, result.record_id)
    assert ensure_utc(record.fetched_at) == result.fetched_at


def test_query_is_ordered_and_inclusive(db, tenant_id, campaign, ingest_series):
    ingest_series((120, 30, "3"), (0, 10, "1"), (60, 20, "2"), (180, 40, "4"))

    window = ledger.query(db, campaign.id, T0 + timedelta(seconds=60), T0 + timedelta(seconds=120))
    assert [ensure_utc(r.fetched_at) for r in window] == [
        T0 + timedelta(seconds=60),
        T0 + timedelta(seconds=120),
    ]

    everything = ledger.query(db, campaign.id)
    offsets = [(ensure_utc(r.fetched_at) - T0).total_seconds() for r in everything]
    assert offsets == [0, 60, 120, 180]


def test_latest_returns_newest_first(db, campaign, ingest_series):
    ingest_series((0, 10, "1"), (60, 20, "2"), (120, 30, "3"))

    rows = ledger.latest(db, campaign.id, limit=2)
    assert [(ensure_utc(r.fetched_at) - T0).total_seconds() for r in rows] == [120, 60]


def test_records_are_invisible_to_other_tenants(campaign, ingest_series, session_factory, other_tenant_id):
    ingest_series((0, 10, "1"))

    with tenant_session(session_factory, other_tenant_id) as other:
        assert ledger.query(other, campaign.id) == []

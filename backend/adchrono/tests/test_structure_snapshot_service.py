"""Tests for SCD Type 2 structure snapshots.

WHAT:
    New / unchanged / changed detection, version numbering, contiguous
    validity intervals, point-in-time lookup and both comparison modes.
"""

from datetime import timedelta

import pytest

from adchrono.models import ObjectTypeEnum, StructureSnapshot
from adchrono.services import structure_snapshot_service as svc
from adchrono.tenancy import tenant_session

from conftest import T0


CAMPAIGN = {"id": "cmp-1", "name": "Spring Sale", "status": "ACTIVE", "daily_budget": "5000"}


def test_first_snapshot_is_new_version_one(db, tenant_id):
    result = svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", CAMPAIGN, now=T0)

    assert result.created is True
    assert result.reason == "new"
    assert result.version == 1

    open_row = svc.get_open_snapshot(db, "cmp-1", ObjectTypeEnum.campaign)
    assert open_row.id == result.snapshot_id
    assert open_row.valid_to is None
    assert open_row.payload == CAMPAIGN


def test_unchanged_payload_does_not_create_a_row(db, tenant_id):
    first = svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", CAMPAIGN, now=T0)
    second = svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", dict(CAMPAIGN), now=T0 + timedelta(minutes=10))

    assert second.created is False
    assert second.reason == "unchanged"
    assert second.snapshot_id == first.snapshot_id
    assert db.query(StructureSnapshot).count() == 1


def test_changed_payload_closes_previous_version(db, tenant_id):
    svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", CAMPAIGN, now=T0)
    paused = dict(CAMPAIGN, status="PAUSED")
    changed_at = T0 + timedelta(minutes=10)

    result = svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", paused, now=changed_at)

    assert result.created is True
    assert result.reason == "changed"
    assert result.version == 2

    versions = svc.list_versions(db, "cmp-1")
    assert [v.version for v in versions] == [1, 2]
    assert versions[0].valid_to is not None
    assert versions[1].valid_to is None
    assert db.query(StructureSnapshot).filter(StructureSnapshot.valid_to.is_(None)).count() == 1


def test_validity_intervals_are_contiguous(db, tenant_id):
    for i, status in enumerate(["ACTIVE", "PAUSED", "ACTIVE", "ARCHIVED"]):
        svc.create_snapshot_if_changed(
            db, tenant_id, "cmp-1", dict(CAMPAIGN, status=status), now=T0 + timedelta(minutes=10 * i),
        )

    versions = svc.list_versions(db, "cmp-1")
    assert [v.version for v in versions] == [1, 2, 3, 4]
    for previous, following in zip(versions, versions[1:]):
        assert previous.valid_to == following.valid_from


def test_get_at_time_respects_half_open_interval(db, tenant_id):
    svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", CAMPAIGN, now=T0)
    change = T0 + timedelta(minutes=10)
    svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", dict(CAMPAIGN, status="PAUSED"), now=change)

    assert svc.get_at_time(db, "cmp-1", T0 - timedelta(seconds=1)) is None
    assert svc.get_at_time(db, "cmp-1", T0).version == 1
    assert svc.get_at_time(db, "cmp-1", change - timedelta(seconds=1)).version == 1
    assert svc.get_at_time(db, "cmp-1", change).version == 2
    assert svc.get_at_time(db, "cmp-1", change + timedelta(days=30)).version == 2


def test_object_types_are_versioned_independently(db, tenant_id):
    svc.create_snapshot_if_changed(db, tenant_id, "123", {"id": "123", "name": "c"}, ObjectTypeEnum.campaign, now=T0)
    result = svc.create_snapshot_if_changed(db, tenant_id, "123", {"id": "123", "name": "a"}, ObjectTypeEnum.ad, now=T0)

    assert result.reason == "new"
    assert result.version == 1


def test_canonical_comparison_ignores_key_order(db, tenant_id):
    svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", {"a": 1, "b": 2}, now=T0, comparison="canonical")
    result = svc.create_snapshot_if_changed(
        db, tenant_id, "cmp-1", {"b": 2, "a": 1}, now=T0 + timedelta(minutes=1), comparison="canonical",
    )
    assert result.created is False


def test_serialized_comparison_treats_key_order_as_change():
    assert svc.payloads_equal({"a": 1, "b": 2}, {"a": 1, "b": 2}, mode="serialized") is True
    assert svc.payloads_equal({"a": 1, "b": 2}, {"b": 2, "a": 1}, mode="serialized") is False
    assert svc.payloads_equal({"a": 1, "b": 2}, {"b": 2, "a": 1}, mode="canonical") is True


def test_snapshots_are_isolated_per_tenant(db, tenant_id, other_tenant_id, session_factory):
    svc.create_snapshot_if_changed(db, tenant_id, "cmp-1", CAMPAIGN, now=T0)

    with tenant_session(session_factory, other_tenant_id) as other:
        assert svc.get_at_time(other, "cmp-1", T0 + timedelta(minutes=1)) is None
        result = svc.create_snapshot_if_changed(other, other_tenant_id, "cmp-1", CAMPAIGN, now=T0)
        assert result.reason == "new"
        assert result.version == 1

    assert len(svc.list_versions(db, "cmp-1")) == 1

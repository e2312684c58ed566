"""HTTP tests for the meta sync and analytics routers.

WHAT: Exercises the FastAPI app end to end against the in-memory database
WHY: Verifies tenant binding from the path, camelCase bodies and the mapping
     of domain errors to status codes
REFERENCES:
    - adchrono/routers/meta_sync.py
    - adchrono/routers/analytics.py
    - adchrono/main.py (AdChronoError handler)
"""

import uuid
from datetime import timedelta

import pytest

from adchrono.routers import meta_sync
from adchrono.services.structure_snapshot_service import create_snapshot_if_changed
from adchrono.services.timeseries_reconstruction_service import reconstruct_time_series
from conftest import T0


def _window(seconds):
    return {"from": T0.isoformat(), "to": (T0 + timedelta(seconds=seconds)).isoformat()}


@pytest.fixture
def series(db, tenant_id, campaign, ingest_series):
    ingest_series((0, 0, "0"), (100, 400, "4.00"))
    reconstruct_time_series(db, tenant_id, campaign.id)
    return campaign


@pytest.fixture
def queue_scheduler(monkeypatch, job_scheduler):
    monkeypatch.setattr(meta_sync, "get_job_scheduler", lambda: job_scheduler)
    return job_scheduler


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

def test_timeseries_returns_camel_case_points(client, tenant_id, series):
    response = client.get(
        f"/tenants/{tenant_id}/analytics/campaigns/{series.id}/timeseries",
        params=_window(100),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["campaignId"] == str(series.id)
    assert body["resolution"] == "second"
    assert len(body["points"]) == 101
    last = body["points"][-1]
    assert last["impressionsCum"] == 400
    assert last["spendCum"] == 4.0
    assert last["isInterpolated"] is False
    assert body["points"][50]["isInterpolated"] is True


def test_timeseries_minute_resolution(client, tenant_id, series):
    response = client.get(
        f"/tenants/{tenant_id}/analytics/campaigns/{series.id}/timeseries",
        params={**_window(100), "resolution": "minute"},
    )

    assert response.status_code == 200
    assert [p["impressionsCum"] for p in response.json()["points"]] == [0, 240]


def test_timeseries_rejects_unknown_resolution(client, tenant_id, series):
    response = client.get(
        f"/tenants/{tenant_id}/analytics/campaigns/{series.id}/timeseries",
        params={**_window(100), "resolution": "day"},
    )

    assert response.status_code == 422


def test_timeseries_rejects_inverted_window(client, tenant_id, series):
    response = client.get(
        f"/tenants/{tenant_id}/analytics/campaigns/{series.id}/timeseries",
        params={"from": (T0 + timedelta(seconds=10)).isoformat(), "to": T0.isoformat()},
    )

    assert response.status_code == 400


def test_timeseries_unknown_campaign_is_404(client, tenant_id):
    response = client.get(f"/tenants/{tenant_id}/analytics/campaigns/{uuid.uuid4()}/timeseries")

    assert response.status_code == 404
    assert response.json()["error_type"] == "EntityNotFoundError"


def test_other_tenant_cannot_read_campaign(client, other_tenant_id, series):
    response = client.get(
        f"/tenants/{other_tenant_id}/analytics/campaigns/{series.id}/timeseries",
        params=_window(100),
    )

    assert response.status_code == 404


def test_metrics_returns_window_deltas(client, tenant_id, series):
    response = client.get(
        f"/tenants/{tenant_id}/analytics/campaigns/{series.id}/metrics",
        params=_window(100),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["impressions"] == 400
    assert body["spend"] == 4.0
    assert body["durationSeconds"] == 100


def test_metrics_without_points_is_404(client, tenant_id, campaign):
    response = client.get(
        f"/tenants/{tenant_id}/analytics/campaigns/{campaign.id}/metrics",
        params=_window(100),
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "no data"


def test_timeseries_with_structure(client, db, tenant_id, series):
    create_snapshot_if_changed(db, tenant_id, "cmp-1", {"id": "cmp-1", "status": "ACTIVE"},
                               now=T0 - timedelta(minutes=5))

    response = client.get(
        f"/tenants/{tenant_id}/analytics/campaigns/{series.id}/timeseries-with-structure",
        params=_window(100),
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["timeseries"]) == 101
    assert body["structure"]["campaign"] == {"id": "cmp-1", "status": "ACTIVE"}
    assert body["structure"]["adSets"] == []


def test_snapshot_at_time(client, db, tenant_id):
    create_snapshot_if_changed(db, tenant_id, "cmp-1", {"id": "cmp-1", "status": "ACTIVE"}, now=T0)

    response = client.get(
        f"/tenants/{tenant_id}/analytics/snapshots/campaign/cmp-1",
        params={"ts": (T0 + timedelta(seconds=1)).isoformat()},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["objectType"] == "campaign"
    assert body["version"] == 1
    assert body["validTo"] is None
    assert body["payload"]["status"] == "ACTIVE"


def test_snapshot_before_first_version_is_404(client, db, tenant_id):
    create_snapshot_if_changed(db, tenant_id, "cmp-1", {"id": "cmp-1"}, now=T0)

    response = client.get(
        f"/tenants/{tenant_id}/analytics/snapshots/campaign/cmp-1",
        params={"ts": (T0 - timedelta(seconds=1)).isoformat()},
    )

    assert response.status_code == 404


def test_active_campaigns_include_latest_point(client, tenant_id, series):
    response = client.get(f"/tenants/{tenant_id}/analytics/campaigns/active")

    assert response.status_code == 200
    campaigns = response.json()["campaigns"]
    assert len(campaigns) == 1
    assert campaigns[0]["externalId"] == "cmp-1"
    assert campaigns[0]["latestPoint"]["impressionsCum"] == 400


# ---------------------------------------------------------------------------
# Meta sync
# ---------------------------------------------------------------------------

def test_sync_structure(client, tenant_id, meta_credentials, patch_meta_client):
    response = client.post(f"/tenants/{tenant_id}/meta/sync-structure", json={"adAccountId": "act_100"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["campaigns"] == {"total": 2, "created": 2}
    assert body["adSets"]["total"] == 2
    assert body["ads"]["total"] == 3


def test_sync_structure_without_credentials_is_400(client, tenant_id, patch_meta_client):
    response = client.post(f"/tenants/{tenant_id}/meta/sync-structure", json={"adAccountId": "act_100"})

    assert response.status_code == 400
    assert response.json()["error_type"] == "ConfigurationError"


def test_sync_insights_single_campaign_reconstructs_inline(client, tenant_id, campaign, meta_credentials,
                                                          patch_meta_client):
    response = client.post(f"/tenants/{tenant_id}/meta/sync-insights", json={"campaignId": "cmp-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["insight"]["id"]
    assert body["reconstruction"] == {"pointsCreated": 0, "from": None, "to": None}


def test_sync_insights_unknown_campaign_is_404(client, tenant_id, meta_credentials, patch_meta_client):
    response = client.post(f"/tenants/{tenant_id}/meta/sync-insights", json={"campaignId": "nope"})

    assert response.status_code == 404


def test_sync_insights_all_queues_reconstruction(client, tenant_id, campaign, meta_credentials,
                                                 patch_meta_client, queue_scheduler, fake_pool):
    response = client.post(f"/tenants/{tenant_id}/meta/sync-insights", json={})

    assert response.status_code == 200
    assert response.json() == {"synced": 1, "errors": [], "reconstructionsQueued": 1}
    assert fake_pool.enqueued[0]["args"][0] == "timeseries-reconstruction"


def test_sync_now_queues_insights_poll(client, tenant_id, queue_scheduler, fake_pool):
    response = client.post(f"/tenants/{tenant_id}/meta/sync-now")

    assert response.status_code == 200
    body = response.json()
    assert body["queued"] is True
    assert body["jobIds"] == [fake_pool.enqueued[0]["job_id"]]
    assert fake_pool.enqueued[0]["args"][0] == "insights-polling"
    assert fake_pool.enqueued[0]["args"][2] == f"insights-polling:{tenant_id}"


def test_sync_now_queues_structure_poll_per_account(client, tenant_id, ad_account, queue_scheduler, fake_pool):
    response = client.post(f"/tenants/{tenant_id}/meta/sync-now")

    assert response.status_code == 200
    assert response.json()["jobIds"] == [job["job_id"] for job in fake_pool.enqueued]
    assert [job["args"][2] for job in fake_pool.enqueued] == [
        f"structure-polling:{tenant_id}:act_100",
        f"insights-polling:{tenant_id}",
    ]


def test_sync_insights_all_fails_when_provider_is_down(client, tenant_id, campaign, meta_credentials,
                                                       patch_meta_client, queue_scheduler, fake_pool):
    patch_meta_client.failing.add("cmp-1")

    response = client.post(f"/tenants/{tenant_id}/meta/sync-insights", json={})

    assert response.status_code == 502
    assert response.json()["error_type"] == "UpstreamApiError"
    assert fake_pool.enqueued == []

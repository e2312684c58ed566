"""Tests for structure and insights sync services with a fake Meta client."""

from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
import requests

from adchrono.errors import ConfigurationError, EntityNotFoundError, UpstreamApiError
from adchrono.models import Ad, AdAccount, AdSet, Campaign, ObjectTypeEnum, RawInsightRecord, StructureSnapshot
from adchrono.services import insights_sync_service, structure_sync_service
from adchrono.services.credential_vault import get_decrypted_secrets, get_meta_api_config
from adchrono.services.insight_payload import extract_metrics
from adchrono.services.meta_ads_client import MetaAdsClient, MetaApiConfig


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def test_credentials_round_trip_encrypted(db, tenant_id, meta_credentials):
    assert "test-token" not in meta_credentials.secrets_enc

    secrets = get_decrypted_secrets(db, tenant_id)
    assert secrets.access_token == "test-token"
    assert secrets.external_account_id == "act_100"
    assert get_meta_api_config(db, tenant_id).access_token == "test-token"


def test_missing_credentials_is_configuration_error(db, tenant_id):
    assert get_decrypted_secrets(db, tenant_id) is None
    with pytest.raises(ConfigurationError):
        get_meta_api_config(db, tenant_id)


def test_unreadable_credentials_is_configuration_error(db, tenant_id, meta_credentials):
    meta_credentials.secrets_enc = "not-a-fernet-token"
    db.commit()

    with pytest.raises(ConfigurationError):
        get_decrypted_secrets(db, tenant_id)


# ---------------------------------------------------------------------------
# Structure sync
# ---------------------------------------------------------------------------

def test_structure_sync_snapshots_whole_tree(db, tenant_id, fake_meta):
    result = structure_sync_service.sync_account_structure(db, tenant_id, "act_100", client=fake_meta)

    assert result.success
    assert result.campaigns == {"total": 2, "created": 2}
    assert result.ad_sets == {"total": 2, "created": 2}
    assert result.ads == {"total": 3, "created": 3}

    assert db.query(AdAccount).count() == 1
    assert {c.external_id: c.status for c in db.query(Campaign).all()} == {"cmp-1": "ACTIVE", "cmp-2": "PAUSED"}
    assert db.query(AdSet).count() == 2
    assert db.query(Ad).filter(Ad.external_id == "ad-1").one().ad_set_external_id == "as-1"
    assert db.query(StructureSnapshot).filter(StructureSnapshot.object_type == ObjectTypeEnum.ad).count() == 3


def test_structure_sync_second_run_creates_only_changes(db, tenant_id, fake_meta):
    structure_sync_service.sync_account_structure(db, tenant_id, "act_100", client=fake_meta)
    fake_meta.campaigns[0]["status"] = "PAUSED"

    result = structure_sync_service.sync_account_structure(db, tenant_id, "act_100", client=fake_meta)

    assert result.campaigns == {"total": 2, "created": 1}
    assert result.ad_sets["created"] == 0
    assert result.ads["created"] == 0
    assert db.query(Campaign).filter(Campaign.external_id == "cmp-1").one().status == "PAUSED"


def test_structure_sync_isolates_campaign_failures(db, tenant_id, fake_meta):
    fake_meta.failing.add("cmp-1")

    result = structure_sync_service.sync_account_structure(db, tenant_id, "act_100", client=fake_meta)

    assert not result.success
    assert len(result.errors) == 1
    assert "cmp-1" in result.errors[0]
    # The sibling campaign still synced completely
    assert db.query(AdSet).filter(AdSet.external_id == "as-2").count() == 1
    assert db.query(Ad).filter(Ad.external_id == "ad-3").count() == 1


def test_structure_sync_without_credentials(db, tenant_id):
    with pytest.raises(ConfigurationError):
        structure_sync_service.sync_account_structure(db, tenant_id, "act_100")


def test_structure_sync_builds_client_from_credentials(db, tenant_id, meta_credentials, patch_meta_client):
    result = structure_sync_service.sync_account_structure(db, tenant_id, "act_100")

    assert result.success
    assert patch_meta_client.config.access_token == "test-token"


# ---------------------------------------------------------------------------
# Insights sync
# ---------------------------------------------------------------------------

def test_fetch_and_ingest_single_campaign(db, tenant_id, campaign, fake_meta):
    ingestion = insights_sync_service.fetch_and_ingest_insights(db, tenant_id, "cmp-1", client=fake_meta)

    record = db.get(RawInsightRecord, ingestion.record_id)
    assert record.campaign_id == campaign.id
    metrics = extract_metrics(record.payload)
    assert metrics.impressions == 1000
    assert metrics.clicks == 40
    assert str(metrics.spend) == "12.50"


def test_fetch_and_ingest_without_data_returns_none(db, tenant_id, campaign, fake_meta):
    fake_meta.insights = {}

    assert insights_sync_service.fetch_and_ingest_insights(db, tenant_id, "cmp-1", client=fake_meta) is None
    assert db.query(RawInsightRecord).count() == 0


def test_fetch_and_ingest_unknown_campaign(db, tenant_id, fake_meta):
    with pytest.raises(EntityNotFoundError):
        insights_sync_service.fetch_and_ingest_insights(db, tenant_id, "cmp-404", client=fake_meta)


def test_sync_all_active_campaigns_skips_paused_and_collects_errors(db, tenant_id, fake_meta):
    structure_sync_service.sync_account_structure(db, tenant_id, "act_100", client=fake_meta)
    fake_meta.campaigns.append({"id": "cmp-3", "name": "Flaky", "status": "ACTIVE"})
    structure_sync_service.sync_account_structure(db, tenant_id, "act_100", client=fake_meta)
    fake_meta.failing.add("cmp-3")

    result = insights_sync_service.sync_all_active_campaigns(db, tenant_id, client=fake_meta)

    assert fake_meta.insight_calls == ["cmp-1", "cmp-3"]
    assert result.synced == 1
    assert len(result.ingested) == 1
    assert len(result.errors) == 1 and "cmp-3" in result.errors[0]


def test_sync_all_active_campaigns_fails_when_every_campaign_fails(db, tenant_id, campaign, fake_meta):
    fake_meta.failing.add("cmp-1")

    with pytest.raises(UpstreamApiError):
        insights_sync_service.sync_all_active_campaigns(db, tenant_id, client=fake_meta)


def test_sync_all_active_campaigns_without_active_campaigns_is_empty(db, tenant_id, fake_meta):
    result = insights_sync_service.sync_all_active_campaigns(db, tenant_id, client=fake_meta)

    assert result.synced == 0
    assert result.errors == []


# ---------------------------------------------------------------------------
# Transport errors through the real client
# ---------------------------------------------------------------------------

def _sdk_object(data):
    obj = Mock()
    obj.export_all_data.return_value = data
    return obj


def test_structure_sync_isolates_transport_errors(db, tenant_id):
    def campaign_factory(campaign_id, api=None):
        campaign = Mock()
        if campaign_id == "cmp-1":
            campaign.get_ad_sets.side_effect = requests.exceptions.ConnectionError("connection reset by peer")
        else:
            campaign.get_ad_sets.return_value = [_sdk_object({"id": "as-2", "campaign_id": campaign_id})]
        campaign.get_ads.return_value = [_sdk_object({"id": "ad-3", "adset_id": "as-2"})]
        return campaign

    with patch("adchrono.services.meta_ads_client.FacebookAdsApi"), \
            patch("adchrono.services.meta_ads_client.AdAccount") as mock_account_cls, \
            patch("adchrono.services.meta_ads_client.Campaign") as mock_campaign_cls:
        mock_account_cls.return_value.get_campaigns.return_value = [
            _sdk_object({"id": "cmp-1", "name": "A", "status": "ACTIVE"}),
            _sdk_object({"id": "cmp-2", "name": "B", "status": "ACTIVE"}),
        ]
        mock_campaign_cls.side_effect = campaign_factory
        client = MetaAdsClient(MetaApiConfig(access_token="tok"))

        result = structure_sync_service.sync_account_structure(db, tenant_id, "act_100", client=client)

    assert len(result.errors) == 1
    assert "cmp-1" in result.errors[0]
    assert result.campaigns["total"] == 2
    assert db.query(StructureSnapshot).filter(StructureSnapshot.external_object_id == "as-2").count() == 1
    assert db.query(Ad).filter(Ad.external_id == "ad-3").count() == 1

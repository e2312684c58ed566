"""Meta Ads API Client Service.

WHAT:
    Thin wrapper around the Facebook Business SDK that fetches campaign
    structure (campaigns, ad sets, ads) and daily campaign insights, returning
    plain dictionaries.

WHY:
    - Every client instance owns its own `FacebookAdsApi`; nothing is set on
      the SDK's process-wide default API, so concurrent jobs for different
      tenants can never pick up each other's token.
    - Provider failures (Graph API errors and `requests` transport errors)
      are translated once into the domain error taxonomy
      (`UpstreamApiError` / `ConfigurationError`) so the job queue can decide
      whether to retry.

WHERE USED:
    - adchrono/services/structure_sync_service.py
    - adchrono/services/insights_sync_service.py

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from facebook_business.adobjects.ad import Ad
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.adset import AdSet
from facebook_business.adobjects.adsinsights import AdsInsights
from facebook_business.adobjects.campaign import Campaign
from facebook_business.api import FacebookAdsApi
from facebook_business.exceptions import FacebookRequestError
from facebook_business.session import FacebookSession

from adchrono.errors import ConfigurationError, UpstreamApiError

logger = logging.getLogger(__name__)

# Graph API error codes that mean "slow down" rather than "broken"
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613, 80000, 80003, 80004, 80014}
# Invalid / expired OAuth token
AUTH_ERROR_CODES = {102, 190}

INSIGHTS_DATE_PRESET = "last_30d"


@dataclass(frozen=True)
class MetaApiConfig:
    """Per-call configuration; built from the tenant's decrypted credentials."""

    access_token: str
    api_version: str = "v19.0"
    app_id: Optional[str] = None
    app_secret: Optional[str] = None


def normalize_account_id(account_id: str) -> str:
    """Meta expects ad account ids in the `act_<id>` form."""
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class MetaAdsClient:
    """Client for the Meta Marketing API.

    Usage:
        client = MetaAdsClient(MetaApiConfig(access_token=token))
        campaigns = client.fetch_structure("act_123456789")
        buckets = client.fetch_daily_insights("120210000000000")
    """

    def __init__(self, config: MetaApiConfig):
        if not config.access_token:
            raise ConfigurationError("Meta access token is empty")
        self.config = config
        session = FacebookSession(
            app_id=config.app_id,
            app_secret=config.app_secret,
            access_token=config.access_token,
        )
        self._api = FacebookAdsApi(session, api_version=config.api_version)

    def fetch_structure(self, ad_account_id: str) -> List[Dict[str, Any]]:
        """Fetch every campaign of an ad account (pagination handled by the SDK cursor)."""
        account_id = normalize_account_id(ad_account_id)
        try:
            logger.info("[META_CLIENT] Fetching campaigns for account %s", account_id)
            account = AdAccount(account_id, api=self._api)
            cursor = account.get_campaigns(fields=[
                Campaign.Field.id,
                Campaign.Field.name,
                Campaign.Field.status,
                Campaign.Field.objective,
                Campaign.Field.daily_budget,
                Campaign.Field.lifetime_budget,
                Campaign.Field.created_time,
            ])
            result = [campaign.export_all_data() for campaign in cursor]
            logger.info("[META_CLIENT] Fetched %d campaigns", len(result))
            return result
        except FacebookRequestError as e:
            raise self._translate_error(e, f"fetching campaigns for {account_id}") from e
        except requests.exceptions.RequestException as e:
            raise self._transport_error(e, f"fetching campaigns for {account_id}") from e

    def fetch_ad_sets(self, campaign_id: str) -> List[Dict[str, Any]]:
        try:
            campaign = Campaign(campaign_id, api=self._api)
            cursor = campaign.get_ad_sets(fields=[
                AdSet.Field.id,
                AdSet.Field.name,
                AdSet.Field.status,
                AdSet.Field.campaign_id,
                AdSet.Field.daily_budget,
                AdSet.Field.optimization_goal,
                AdSet.Field.targeting,
            ])
            return [ad_set.export_all_data() for ad_set in cursor]
        except FacebookRequestError as e:
            raise self._translate_error(e, f"fetching ad sets for campaign {campaign_id}") from e
        except requests.exceptions.RequestException as e:
            raise self._transport_error(e, f"fetching ad sets for campaign {campaign_id}") from e

    def fetch_ads(self, campaign_id: str) -> List[Dict[str, Any]]:
        try:
            campaign = Campaign(campaign_id, api=self._api)
            cursor = campaign.get_ads(fields=[
                Ad.Field.id,
                Ad.Field.name,
                Ad.Field.status,
                Ad.Field.adset_id,
                Ad.Field.creative,
            ])
            return [ad.export_all_data() for ad in cursor]
        except FacebookRequestError as e:
            raise self._translate_error(e, f"fetching ads for campaign {campaign_id}") from e
        except requests.exceptions.RequestException as e:
            raise self._transport_error(e, f"fetching ads for campaign {campaign_id}") from e

    def fetch_daily_insights(self, campaign_id: str) -> List[Dict[str, Any]]:
        """Fetch daily insight buckets for the last 30 days.

        Returns:
            List of bucket dicts with string-encoded counters, e.g.
            {"date_start": "...", "spend": "12.34", "impressions": "1000",
             "reach": "800", "actions": [{"action_type": "link_click", "value": "12"}]}
        """
        try:
            logger.info("[META_CLIENT] Fetching daily insights for campaign %s", campaign_id)
            campaign = Campaign(campaign_id, api=self._api)
            cursor = campaign.get_insights(
                fields=[
                    AdsInsights.Field.date_start,
                    AdsInsights.Field.date_stop,
                    AdsInsights.Field.spend,
                    AdsInsights.Field.impressions,
                    AdsInsights.Field.reach,
                    AdsInsights.Field.actions,
                ],
                params={
                    "time_increment": 1,
                    "date_preset": INSIGHTS_DATE_PRESET,
                },
            )
            result = [bucket.export_all_data() for bucket in cursor]
            logger.info("[META_CLIENT] Fetched %d insight buckets", len(result))
            return result
        except FacebookRequestError as e:
            raise self._translate_error(e, f"fetching insights for campaign {campaign_id}") from e
        except requests.exceptions.RequestException as e:
            raise self._transport_error(e, f"fetching insights for campaign {campaign_id}") from e

    def _translate_error(self, error: FacebookRequestError, context: str) -> Exception:
        """Map a Graph API error onto the domain taxonomy."""
        error_code = error.api_error_code()
        http_status = error.http_status()
        error_message = error.api_error_message()

        logger.error(
            "[META_CLIENT] API error while %s: HTTP %s, Code %s, Message: %s",
            context, http_status, error_code, error_message,
        )

        if http_status == 401 or error_code in AUTH_ERROR_CODES:
            return ConfigurationError(
                f"Authentication failed while {context}. Token may be expired or invalid."
            )

        rate_limited = http_status == 429 or error_code in RATE_LIMIT_ERROR_CODES
        return UpstreamApiError(
            f"API error while {context}: HTTP {http_status}, {error_message}",
            status=http_status,
            code=error_code,
            rate_limited=rate_limited,
        )

    def _transport_error(self, error: requests.exceptions.RequestException, context: str) -> UpstreamApiError:
        """Connection resets and timeouts below the Graph API layer."""
        logger.error("[META_CLIENT] Transport error while %s: %s", context, error)
        return UpstreamApiError(f"Transport error while {context}: {error}")

"""Polling scheduler - per-tenant repeating polling definitions.

WHAT:
    Installs and removes the repeating insights / structure polling jobs for
    a tenant, bootstraps every connected tenant when the scheduler process
    starts, and triggers on-demand syncs.

POLLING (defaults, tenants may override):
    - insights-polling:{tenant}              every 2 minutes
    - structure-polling:{tenant}:{account}   every 10 minutes, per ad account

REFERENCES:
    - adchrono/workers/job_queue.py
    - adchrono/workers/arq_worker.py:scheduler_startup
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adchrono.deps import Settings, get_settings
from adchrono.errors import ConfigurationError
from adchrono.models import AdAccount, ProviderCredential, ProviderEnum, Tenant
from adchrono.tenancy import system_session, tenant_session
from adchrono.workers.job_queue import (
    QUEUE_INSIGHTS,
    QUEUE_STRUCTURE,
    JobScheduler,
    insights_dedup_key,
    structure_dedup_key,
)

logger = logging.getLogger(__name__)


class PollingScheduler:
    def __init__(
        self,
        job_scheduler: JobScheduler,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
    ):
        self.job_scheduler = job_scheduler
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    def initialize(self) -> int:
        """Start polling for every tenant with Meta credentials; returns tenant count."""
        with system_session(self.session_factory) as db:
            tenant_ids = [
                row[0]
                for row in db.query(ProviderCredential.tenant_id)
                .filter(ProviderCredential.provider == ProviderEnum.meta)
                .distinct()
                .all()
            ]

        started = 0
        for tenant_id in tenant_ids:
            try:
                self.start_polling_for_tenant(tenant_id)
                started += 1
            except ConfigurationError as exc:
                logger.warning("[POLLING] Not polling tenant %s: %s", tenant_id, exc)
        logger.info("[POLLING] Initialized polling for %d/%d tenants", started, len(tenant_ids))
        return started

    def start_polling_for_tenant(self, tenant_id: UUID) -> List[str]:
        """(Re)install the tenant's repeating jobs; returns the dedup keys.

        Raises:
            ConfigurationError: Tenant unknown or has no Meta credentials.
        """
        with tenant_session(self.session_factory, tenant_id) as db:
            tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
            if tenant is None:
                raise ConfigurationError(f"Tenant {tenant_id} does not exist")
            credential = (
                db.query(ProviderCredential)
                .filter(ProviderCredential.provider == ProviderEnum.meta)
                .first()
            )
            if credential is None:
                raise ConfigurationError(f"Meta is not connected for tenant {tenant_id}")

            account_ids = tenant_ad_account_ids(db)

            insights_interval = tenant.insights_poll_interval_ms or self.settings.INSIGHTS_POLL_INTERVAL_MS
            structure_interval = tenant.structure_poll_interval_ms or self.settings.STRUCTURE_POLL_INTERVAL_MS

        keys = []
        key = insights_dedup_key(tenant_id)
        self.job_scheduler.schedule_repeating(
            QUEUE_INSIGHTS, key, insights_interval, {"tenant_id": str(tenant_id)},
        )
        keys.append(key)

        for ad_account_id in account_ids:
            key = structure_dedup_key(tenant_id, ad_account_id)
            self.job_scheduler.schedule_repeating(
                QUEUE_STRUCTURE, key, structure_interval,
                {"tenant_id": str(tenant_id), "ad_account_id": ad_account_id},
            )
            keys.append(key)

        if not account_ids:
            logger.warning("[POLLING] Tenant %s has no ad accounts; structure polling not scheduled", tenant_id)

        logger.info("[POLLING] Started polling for tenant %s (%d jobs)", tenant_id, len(keys))
        return keys

    def stop_polling_for_tenant(self, tenant_id: UUID) -> int:
        """Remove all of the tenant's repeating jobs; returns how many were removed."""
        stopped = 0
        if self.job_scheduler.stop_repeating(insights_dedup_key(tenant_id)):
            stopped += 1
        for definition in self.job_scheduler.list_repeating(f"structure-polling:{tenant_id}:"):
            if self.job_scheduler.stop_repeating(definition.dedup_key):
                stopped += 1
        logger.info("[POLLING] Stopped %d jobs for tenant %s", stopped, tenant_id)
        return stopped

    def _tenant_ad_account_ids(self, tenant_id: UUID) -> List[str]:
        with tenant_session(self.session_factory, tenant_id) as db:
            return tenant_ad_account_ids(db)

    async def trigger_immediate_sync(
        self,
        tenant_id: UUID,
        campaign_id: Optional[str] = None,
        ad_account_ids: Optional[List[str]] = None,
    ) -> List[str]:
        """Enqueue a structure sync per ad account, then an insights sync.

        Each job shares its repeating definition's dedup key, so a manual
        sync never overlaps a scheduled one. Returns the arq job ids.
        `ad_account_ids` defaults to the tenant's synced accounts.
        """
        account_ids = ad_account_ids
        if account_ids is None:
            account_ids = await asyncio.to_thread(self._tenant_ad_account_ids, tenant_id)

        job_ids = []
        for ad_account_id in account_ids:
            job_id = await self.job_scheduler.enqueue_once(
                QUEUE_STRUCTURE,
                {"tenant_id": str(tenant_id), "ad_account_id": ad_account_id},
                dedup_key=structure_dedup_key(tenant_id, ad_account_id),
            )
            if job_id is not None:
                job_ids.append(job_id)

        payload: Dict[str, Any] = {"tenant_id": str(tenant_id)}
        if campaign_id:
            payload["campaign_id"] = campaign_id
        job_id = await self.job_scheduler.enqueue_once(
            QUEUE_INSIGHTS, payload, dedup_key=insights_dedup_key(tenant_id),
        )
        if job_id is not None:
            job_ids.append(job_id)

        logger.info("[POLLING] Immediate sync for tenant %s queued %d jobs", tenant_id, len(job_ids))
        return job_ids

    def get_status(self) -> Dict[str, Any]:
        definitions = self.job_scheduler.list_repeating()
        return {
            "accepting": self.job_scheduler.accepting,
            "repeating_jobs": [
                {
                    "queue": d.queue_name,
                    "dedup_key": d.dedup_key,
                    "interval_ms": d.interval_ms,
                    "next_run_at": d.next_run_at.isoformat() if d.next_run_at else None,
                }
                for d in definitions
            ],
            "failed_jobs": len(self.job_scheduler.failed_jobs(self.job_scheduler.failed_job_limit)),
        }

    def shutdown(self) -> None:
        self.job_scheduler.shutdown()


def tenant_ad_account_ids(db: Session) -> List[str]:
    """Synced ad accounts, falling back to the account stored on the Meta credential."""
    account_ids = [account.external_id for account in db.query(AdAccount).all()]
    if account_ids:
        return account_ids
    credential = (
        db.query(ProviderCredential)
        .filter(ProviderCredential.provider == ProviderEnum.meta)
        .first()
    )
    if credential is not None and credential.external_account_id:
        return [credential.external_account_id]
    return []

"""Pytest configuration for adchrono integration tests

WHAT: Shared fixtures for service, worker and HTTP tests
WHY: Every test gets a fresh in-memory database and tenant-bound sessions
REFERENCES:
    - adchrono/main.py: FastAPI application
    - adchrono/database.py: Database configuration
    - adchrono/tenancy.py: Tenant-bound sessions
"""

import asyncio
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (adchrono.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)


T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every session (and thread) of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from adchrono.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, autocommit=False, autoflush=False)


def _create_tenant(session_factory, name: str) -> uuid.UUID:
    from adchrono.models import Tenant

    db = session_factory()
    try:
        tenant = Tenant(id=uuid.uuid4(), name=name)
        db.add(tenant)
        db.commit()
        return tenant.id
    finally:
        db.close()


@pytest.fixture
def tenant_id(session_factory) -> uuid.UUID:
    return _create_tenant(session_factory, "Acme")


@pytest.fixture
def other_tenant_id(session_factory) -> uuid.UUID:
    return _create_tenant(session_factory, "Globex")


@pytest.fixture
def db(session_factory, tenant_id) -> Generator[Session, None, None]:
    """Session bound to `tenant_id`."""
    from adchrono.tenancy import tenant_session

    with tenant_session(session_factory, tenant_id) as session:
        yield session


@pytest.fixture
def ad_account(db, tenant_id):
    from adchrono.models import AdAccount

    account = AdAccount(tenant_id=tenant_id, external_id="act_100", name="Main account")
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def campaign(db, tenant_id, ad_account):
    from adchrono.models import Campaign

    row = Campaign(
        tenant_id=tenant_id,
        ad_account_id=ad_account.id,
        external_id="cmp-1",
        name="Spring Sale",
        status="ACTIVE",
        objective="OUTCOME_SALES",
    )
    db.add(row)
    db.commit()
    return row


# ============================================================================
# Payload helpers
# ============================================================================

@pytest.fixture
def insight_doc():
    """Build a stored insight document from cumulative counters (one bucket)."""
    from adchrono.services.insight_payload import build_insight_document

    def _build(impressions=0, spend="0", clicks=0, reach=0, fetched_at=T0, campaign_external_id="cmp-1"):
        bucket = {
            "date_start": fetched_at.date().isoformat(),
            "date_stop": fetched_at.date().isoformat(),
            "impressions": str(impressions),
            "spend": str(spend),
            "reach": str(reach),
            "actions": [{"action_type": "link_click", "value": str(clicks)}],
        }
        return build_insight_document(campaign_external_id, fetched_at, [bucket])

    return _build


@pytest.fixture
def ingest_series(db, tenant_id, campaign, insight_doc):
    """Append records at T0 + offset seconds with the given impressions/spend."""
    from adchrono.services import insight_ledger_service

    def _ingest(*observations):
        results = []
        for offset, impressions, spend in observations:
            fetched_at = T0 + timedelta(seconds=offset)
            results.append(insight_ledger_service.ingest(
                db, tenant_id, campaign.id,
                insight_doc(impressions=impressions, spend=spend, fetched_at=fetched_at),
                fetched_at=fetched_at,
            ))
        return results

    return _ingest


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(session_factory):
    """FastAPI test application with get_db pointed at the test engine."""
    from adchrono.database import get_db
    from adchrono.main import create_app

    test_app = create_app()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


# ============================================================================
# Queue fakes
# ============================================================================

class FakeJob:
    def __init__(self, job_id):
        self.job_id = job_id


class FakeArqPool:
    """Records enqueue_job calls; duplicate `_job_id`s return None like arq does."""

    def __init__(self):
        self.enqueued = []
        self.locked_keys = set()
        self._ids = set()
        self._counter = 0

    async def enqueue_job(self, function, *args, _job_id=None, _queue_name=None, **kwargs):
        if _job_id is None:
            self._counter += 1
            _job_id = f"job-{self._counter}"
        if _job_id in self._ids:
            return None
        self._ids.add(_job_id)
        self.enqueued.append({
            "function": function,
            "args": args,
            "job_id": _job_id,
            "queue_name": _queue_name,
        })
        return FakeJob(_job_id)

    async def exists(self, key):
        return 1 if key in self.locked_keys else 0


class FakeLock:
    """Blocks like a redis lock: one holder per name at a time."""

    def __init__(self, redis, name):
        self._redis = redis
        self._name = name
        self._lock = redis.locks.setdefault(name, asyncio.Lock())

    async def __aenter__(self):
        await self._lock.acquire()
        self._redis.acquired.append(self._name)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._redis.released.append(self._name)
        self._lock.release()
        return False


class FakeRedis:
    def __init__(self):
        self.acquired = []
        self.released = []
        self.locks = {}

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeLock(self, name)


@pytest.fixture
def fake_pool():
    return FakeArqPool()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def job_scheduler(session_factory, fake_pool):
    from adchrono.workers.job_queue import JobScheduler, RetryPolicy

    async def provider():
        return fake_pool

    return JobScheduler(
        session_factory,
        provider,
        RetryPolicy(max_attempts=3, backoff_base_ms=1000, backoff_strategy="exponential"),
        failed_job_limit=5,
        lock_timeout_seconds=30,
    )


# ============================================================================
# Provider fakes
# ============================================================================

class FakeMetaClient:
    """Stands in for MetaAdsClient; campaign ids in `failing` raise on ad set fetch."""

    def __init__(self, config=None):
        self.config = config
        self.campaigns = [
            {"id": "cmp-1", "name": "Spring Sale", "status": "ACTIVE", "objective": "OUTCOME_SALES"},
            {"id": "cmp-2", "name": "Brand", "status": "PAUSED", "objective": "OUTCOME_AWARENESS"},
        ]
        self.ad_sets = {
            "cmp-1": [{"id": "as-1", "name": "Set 1", "status": "ACTIVE", "campaign_id": "cmp-1"}],
            "cmp-2": [{"id": "as-2", "name": "Set 2", "status": "PAUSED", "campaign_id": "cmp-2"}],
        }
        self.ads = {
            "cmp-1": [
                {"id": "ad-1", "name": "Ad 1", "status": "ACTIVE", "adset_id": "as-1"},
                {"id": "ad-2", "name": "Ad 2", "status": "ACTIVE", "adset_id": "as-1"},
            ],
            "cmp-2": [{"id": "ad-3", "name": "Ad 3", "status": "PAUSED", "adset_id": "as-2"}],
        }
        self.insights = {
            "cmp-1": [{"date_start": "2024-06-01", "impressions": "1000", "spend": "12.50", "reach": "800",
                       "actions": [{"action_type": "link_click", "value": "40"}]}],
        }
        self.failing = set()
        self.insight_calls = []

    def fetch_structure(self, ad_account_id):
        return [dict(c) for c in self.campaigns]

    def fetch_ad_sets(self, campaign_id):
        from adchrono.errors import UpstreamApiError

        if campaign_id in self.failing:
            raise UpstreamApiError(f"ad sets unavailable for {campaign_id}", status=500)
        return [dict(a) for a in self.ad_sets.get(campaign_id, [])]

    def fetch_ads(self, campaign_id):
        return [dict(a) for a in self.ads.get(campaign_id, [])]

    def fetch_daily_insights(self, campaign_id):
        from adchrono.errors import UpstreamApiError

        self.insight_calls.append(campaign_id)
        if campaign_id in self.failing:
            raise UpstreamApiError(f"insights unavailable for {campaign_id}", status=500)
        return [dict(b) for b in self.insights.get(campaign_id, [])]


@pytest.fixture
def fake_meta():
    return FakeMetaClient()


@pytest.fixture
def meta_credentials(db, tenant_id):
    """Store an encrypted Meta token for `tenant_id`."""
    from adchrono.models import ProviderEnum
    from adchrono.services.credential_vault import store_secrets

    return store_secrets(db, tenant_id, ProviderEnum.meta, access_token="test-token", external_account_id="act_100")


@pytest.fixture
def patch_meta_client(monkeypatch, fake_meta):
    """Route every MetaAdsClient(...) construction in the sync services to `fake_meta`."""
    from adchrono.services import insights_sync_service, structure_sync_service

    def _factory(config):
        fake_meta.config = config
        return fake_meta

    monkeypatch.setattr(insights_sync_service, "MetaAdsClient", _factory)
    monkeypatch.setattr(structure_sync_service, "MetaAdsClient", _factory)
    return fake_meta

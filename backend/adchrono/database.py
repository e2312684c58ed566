"""Database session and base configuration.

WHAT:
    Provides the sync SQLAlchemy engine and session factory, plus FastAPI
    dependencies that hand out tenant-bound sessions.

WHY:
    - One sync engine serves routers, services and arq jobs (the latter via
      asyncio.to_thread)
    - Tenant binding happens here so no router can forget it

USAGE:
    from adchrono.database import SessionLocal, get_tenant_db

    @router.get("/tenants/{tenant_id}/things")
    def list_things(db: Session = Depends(get_tenant_db)):
        return db.query(Thing).all()   # tenant filter applied automatically

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - adchrono/tenancy.py (tenant enforcement)
"""

import os
from typing import Generator
from uuid import UUID

from fastapi import Depends
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from adchrono.tenancy import bind_tenant


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from adchrono.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# SYNC ENGINE (services, workers, migrations)
# =============================================================================

# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in adchrono.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield an unbound sync session (health checks, tenant-agnostic tables)."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_tenant_db(tenant_id: UUID, db: Session = Depends(get_db)) -> Generator[Session, None, None]:
    """Yield a session bound to the `tenant_id` path parameter.

    Tests override `get_db`; the tenant binding still applies.
    """
    yield bind_tenant(db, tenant_id)


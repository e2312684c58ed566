"""Tenant scoping for SQLAlchemy sessions.

WHAT:
    Binds a session to a tenant and enforces it on every statement:
    - SELECT / UPDATE / DELETE against tenant-scoped models get
      `tenant_id == <bound tenant>` injected via `with_loader_criteria`.
    - New tenant-scoped rows are stamped with the bound tenant on flush, and
      rows stamped with another tenant are rejected.
    - A session with no tenant that touches tenant-scoped models raises,
      unless it was explicitly opened for all tenants (scheduler bootstrap).
    - On PostgreSQL the bound tenant is also pushed into `app.tenant_id` for
      the row-level-security policies created by the migration.

WHY:
    Isolation has to hold even when a query forgets its tenant filter, so it
    lives in the storage layer instead of in every caller.

USAGE:
    with tenant_session(SessionLocal, tenant_id) as db:
        db.query(TimeSeriesPoint).all()   # only this tenant's rows

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_events.html#adding-global-where-on-criteria
    - alembic/versions/20261019_000001_temporal_schema.py (RLS policies)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional
from uuid import UUID

from sqlalchemy import event, text
from sqlalchemy.orm import Session, with_loader_criteria

from adchrono.errors import TenantScopeError
from adchrono.models import TenantScopedMixin

logger = logging.getLogger(__name__)

TENANT_KEY = "tenant_id"
ALL_TENANTS_KEY = "all_tenants"


def bind_tenant(db: Session, tenant_id: UUID) -> Session:
    """Scope an existing session to one tenant."""
    if not isinstance(tenant_id, UUID):
        tenant_id = UUID(str(tenant_id))
    db.info[TENANT_KEY] = tenant_id
    db.info.pop(ALL_TENANTS_KEY, None)
    return db


def allow_all_tenants(db: Session) -> Session:
    """Mark a session as deliberately cross-tenant (read-only bootstrap paths)."""
    db.info.pop(TENANT_KEY, None)
    db.info[ALL_TENANTS_KEY] = True
    return db


def current_tenant(db: Session) -> Optional[UUID]:
    return db.info.get(TENANT_KEY)


def require_tenant(db: Session) -> UUID:
    tenant_id = current_tenant(db)
    if tenant_id is None:
        raise TenantScopeError("Session is not bound to a tenant")
    return tenant_id


@contextmanager
def tenant_session(session_factory: Callable[[], Session], tenant_id: UUID) -> Generator[Session, None, None]:
    """Open a session bound to `tenant_id` and close it afterwards."""
    db = session_factory()
    bind_tenant(db, tenant_id)
    try:
        yield db
    finally:
        db.close()


@contextmanager
def system_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    """Open a cross-tenant session; only for scheduler bootstrap and maintenance."""
    db = session_factory()
    allow_all_tenants(db)
    try:
        yield db
    finally:
        db.close()


def _is_tenant_scoped(mapper) -> bool:
    return issubclass(mapper.class_, TenantScopedMixin)


@event.listens_for(Session, "do_orm_execute")
def _scope_statement_to_tenant(execute_state) -> None:
    if not (execute_state.is_select or execute_state.is_update or execute_state.is_delete):
        return
    # Criteria added to the parent statement already propagate to these
    if execute_state.is_column_load or execute_state.is_relationship_load:
        return

    session = execute_state.session
    if session.info.get(ALL_TENANTS_KEY):
        return

    tenant_id = session.info.get(TENANT_KEY)
    if tenant_id is None:
        if any(_is_tenant_scoped(mapper) for mapper in execute_state.all_mappers):
            raise TenantScopeError("Tenant-scoped query issued on a session without a tenant")
        return

    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(
            TenantScopedMixin,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


@event.listens_for(Session, "before_flush")
def _stamp_new_rows(session, flush_context, instances) -> None:
    if session.info.get(ALL_TENANTS_KEY):
        return
    tenant_id = session.info.get(TENANT_KEY)
    for obj in list(session.new) + list(session.dirty):
        if not isinstance(obj, TenantScopedMixin):
            continue
        if tenant_id is None:
            raise TenantScopeError(
                f"Cannot write {type(obj).__name__} from a session without a tenant"
            )
        if obj.tenant_id is None:
            obj.tenant_id = tenant_id
        elif obj.tenant_id != tenant_id:
            raise TenantScopeError(
                f"{type(obj).__name__} belongs to tenant {obj.tenant_id}, session is bound to {tenant_id}"
            )


@event.listens_for(Session, "after_begin")
def _set_rls_tenant(session, transaction, connection) -> None:
    if connection.dialect.name != "postgresql":
        return
    tenant_id = session.info.get(TENANT_KEY)
    if tenant_id is not None:
        connection.execute(
            text("SELECT set_config('app.tenant_id', :tenant_id, true)"),
            {"tenant_id": str(tenant_id)},
        )
    elif session.info.get(ALL_TENANTS_KEY):
        connection.execute(text("SELECT set_config('app.all_tenants', 'on', true)"))

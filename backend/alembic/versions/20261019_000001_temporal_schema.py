"""Temporal schema: tenants, registry, snapshots, insight ledger, time series, jobs

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates the full adchrono schema:
    - tenants / provider_credentials: tenants and their encrypted Meta secrets
    - ad_accounts / campaigns / ad_sets / ads: current-state registry
    - structure_snapshots: SCD Type 2 history of campaign/adset/ad documents
    - raw_insight_records: append-only ledger of insights payloads
    - time_series_points: per-second cumulative counters
    - polling_job_definitions / failed_jobs: job scheduling state
    Enables row level security on every tenant-scoped table.

WHY:
    - Partial unique index keeps at most one open snapshot per object
    - (campaign_id, ts) uniqueness makes reconstruction idempotent
    - RLS is a second line of defence behind the ORM tenant filter; the
      session sets `app.tenant_id` (or `app.all_tenants`) per transaction

REFERENCES:
    - adchrono/models.py
    - adchrono/tenancy.py (session settings consumed by the policies)
    - https://www.postgresql.org/docs/current/ddl-rowsecurity.html
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


TENANT_TABLES = [
    'provider_credentials',
    'ad_accounts',
    'campaigns',
    'ad_sets',
    'ads',
    'structure_snapshots',
    'raw_insight_records',
    'time_series_points',
]


def _tenant_column():
    return sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False)


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enums
    # =========================================================================
    providerenum = postgresql.ENUM('meta', name='providerenum', create_type=False)
    objecttypeenum = postgresql.ENUM('campaign', 'adset', 'ad', name='objecttypeenum', create_type=False)
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE providerenum AS ENUM ('meta');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE objecttypeenum AS ENUM ('campaign', 'adset', 'ad');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # =========================================================================
    # STEP 2: Tenants and credentials
    # =========================================================================
    op.create_table(
        'tenants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('insights_poll_interval_ms', sa.Integer(), nullable=True),
        sa.Column('structure_poll_interval_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'provider_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('provider', providerenum, nullable=False),
        sa.Column('secrets_enc', sa.Text(), nullable=False),
        sa.Column('external_account_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'provider', name='uq_provider_credential_tenant_provider'),
    )
    op.create_index('ix_provider_credentials_tenant_id', 'provider_credentials', ['tenant_id'])

    # =========================================================================
    # STEP 3: Registry (current state)
    # =========================================================================
    op.create_table(
        'ad_accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'external_id', name='uq_ad_account_tenant_external'),
    )
    op.create_index('ix_ad_accounts_tenant_id', 'ad_accounts', ['tenant_id'])

    op.create_table(
        'campaigns',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('ad_account_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('ad_accounts.id'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('objective', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('ad_account_id', 'external_id', name='uq_campaign_account_external'),
    )
    op.create_index('ix_campaigns_tenant_id', 'campaigns', ['tenant_id'])
    op.create_index('ix_campaigns_external_id', 'campaigns', ['external_id'])

    op.create_table(
        'ad_sets',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('campaign_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('campaigns.id'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('campaign_id', 'external_id', name='uq_ad_set_campaign_external'),
    )
    op.create_index('ix_ad_sets_tenant_id', 'ad_sets', ['tenant_id'])

    op.create_table(
        'ads',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('campaign_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('campaigns.id'), nullable=False),
        sa.Column('ad_set_external_id', sa.String(), nullable=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('campaign_id', 'external_id', name='uq_ad_campaign_external'),
    )
    op.create_index('ix_ads_tenant_id', 'ads', ['tenant_id'])

    # =========================================================================
    # STEP 4: Temporal stores
    # =========================================================================
    # WHAT: SCD2 snapshots, the raw ledger and the dense series
    # WHY: partial unique index = at most one open version per object
    op.create_table(
        'structure_snapshots',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('object_type', objecttypeenum, nullable=False),
        sa.Column('external_object_id', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('payload', postgresql.JSON(), nullable=False),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('valid_to', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            'tenant_id', 'object_type', 'external_object_id', 'version',
            name='uq_structure_snapshot_version',
        ),
    )
    op.create_index('ix_structure_snapshots_tenant_id', 'structure_snapshots', ['tenant_id'])
    op.create_index(
        'uq_structure_snapshot_open',
        'structure_snapshots',
        ['tenant_id', 'object_type', 'external_object_id'],
        unique=True,
        postgresql_where=sa.text('valid_to IS NULL'),
    )
    op.create_index(
        'ix_structure_snapshot_lookup',
        'structure_snapshots',
        ['external_object_id', 'object_type', 'valid_from'],
    )

    op.create_table(
        'raw_insight_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('campaign_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('campaigns.id'), nullable=False),
        sa.Column('fetched_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payload', postgresql.JSON(), nullable=False),
    )
    op.create_index('ix_raw_insight_records_tenant_id', 'raw_insight_records', ['tenant_id'])
    op.create_index('ix_raw_insight_campaign_fetched', 'raw_insight_records', ['campaign_id', 'fetched_at'])

    op.create_table(
        'time_series_points',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        _tenant_column(),
        sa.Column('campaign_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('campaigns.id'), nullable=False),
        sa.Column('ts', sa.DateTime(timezone=True), nullable=False),
        sa.Column('impressions_cum', sa.Integer(), nullable=False),
        sa.Column('spend_cum', sa.Numeric(18, 6), nullable=False),
        sa.Column('clicks_cum', sa.Integer(), nullable=False),
        sa.Column('reach_cum', sa.Integer(), nullable=False),
        sa.Column('is_interpolated', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            'source_insight_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('raw_insight_records.id'), nullable=True,
        ),
        sa.UniqueConstraint('campaign_id', 'ts', name='uq_time_series_point_campaign_ts'),
    )
    op.create_index('ix_time_series_points_tenant_id', 'time_series_points', ['tenant_id'])

    # =========================================================================
    # STEP 5: Job scheduling state (not tenant scoped)
    # =========================================================================
    op.create_table(
        'polling_job_definitions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('queue_name', sa.String(), nullable=False),
        sa.Column('dedup_key', sa.String(), nullable=False, unique=True),
        sa.Column('interval_ms', sa.Integer(), nullable=False),
        sa.Column('payload', postgresql.JSON(), nullable=False),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_polling_job_definitions_next_run_at', 'polling_job_definitions', ['next_run_at'])

    op.create_table(
        'failed_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('queue_name', sa.String(), nullable=False),
        sa.Column('dedup_key', sa.String(), nullable=True),
        sa.Column('payload', postgresql.JSON(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('error_type', sa.String(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_failed_jobs_failed_at', 'failed_jobs', ['failed_at'])

    # =========================================================================
    # STEP 6: Row level security
    # =========================================================================
    # WHAT: rows are visible only to the tenant bound on the transaction
    # WHY: `current_setting(..., true)` returns NULL when unset, so an unbound
    #      connection sees nothing instead of erroring
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(f"""
            CREATE POLICY tenant_isolation ON {table}
            USING (
                current_setting('app.all_tenants', true) = 'on'
                OR tenant_id = NULLIF(current_setting('app.tenant_id', true), '')::uuid
            )
            WITH CHECK (
                tenant_id = NULLIF(current_setting('app.tenant_id', true), '')::uuid
            )
        """)


def downgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")

    op.drop_index('ix_failed_jobs_failed_at', table_name='failed_jobs')
    op.drop_table('failed_jobs')
    op.drop_index('ix_polling_job_definitions_next_run_at', table_name='polling_job_definitions')
    op.drop_table('polling_job_definitions')

    op.drop_index('ix_time_series_points_tenant_id', table_name='time_series_points')
    op.drop_table('time_series_points')
    op.drop_index('ix_raw_insight_campaign_fetched', table_name='raw_insight_records')
    op.drop_index('ix_raw_insight_records_tenant_id', table_name='raw_insight_records')
    op.drop_table('raw_insight_records')
    op.drop_index('ix_structure_snapshot_lookup', table_name='structure_snapshots')
    op.drop_index('uq_structure_snapshot_open', table_name='structure_snapshots')
    op.drop_index('ix_structure_snapshots_tenant_id', table_name='structure_snapshots')
    op.drop_table('structure_snapshots')

    op.drop_index('ix_ads_tenant_id', table_name='ads')
    op.drop_table('ads')
    op.drop_index('ix_ad_sets_tenant_id', table_name='ad_sets')
    op.drop_table('ad_sets')
    op.drop_index('ix_campaigns_external_id', table_name='campaigns')
    op.drop_index('ix_campaigns_tenant_id', table_name='campaigns')
    op.drop_table('campaigns')
    op.drop_index('ix_ad_accounts_tenant_id', table_name='ad_accounts')
    op.drop_table('ad_accounts')
    op.drop_index('ix_provider_credentials_tenant_id', table_name='provider_credentials')
    op.drop_table('provider_credentials')
    op.drop_table('tenants')

    op.execute("DROP TYPE IF EXISTS objecttypeenum")
    op.execute("DROP TYPE IF EXISTS providerenum")

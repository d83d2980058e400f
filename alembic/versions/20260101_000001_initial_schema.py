"""Initial schema: organizations, integrations, webhook ledger, data points, insights

Revision ID: 20260101_000001
Revises:
Create Date: 2026-01-01 00:00:00.000000

WHAT:
    - organizations / users / organization_members: tenancy, read for authorization
    - integrations: one per (organization, platform), encrypted credentials
    - webhook_events: delivery ledger, unique on (integration_id, external_id, topic)
    - data_points: immutable facts, unique on (integration_id, metric_type, source_key)
    - insights: produced elsewhere, read by the dashboard

WHY:
    The two unique constraints are what make webhook redelivery and
    webhook/backfill overlap idempotent. Postgres treats NULL source keys as
    distinct, so keyless aggregate facts are never blocked.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260101_000001'
down_revision = None
branch_labels = None
depends_on = None


role_enum = sa.Enum('owner', 'admin', 'member', 'viewer', name='roleenum')
platform_enum = sa.Enum('shopify', 'stripe', 'woocommerce', 'google_analytics', name='platformenum')
integration_status_enum = sa.Enum('active', 'syncing', 'error', 'disconnected', name='integrationstatusenum')
webhook_event_status_enum = sa.Enum(
    'received', 'processed', 'failed', 'signature_verification_failed', 'invalid_json',
    name='webhookeventstatusenum',
)


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_organizations_slug', 'organizations', ['slug'], unique=True)

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'organization_members',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', role_enum, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('organization_id', 'user_id', name='uq_organization_member'),
    )

    # =========================================================================
    # Integrations
    # =========================================================================
    op.create_table(
        'integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('platform', platform_enum, nullable=False),
        sa.Column('platform_account_id', sa.String(), nullable=False),
        sa.Column('status', integration_status_enum, nullable=False),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('refresh_token_enc', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('granted_scopes', sa.JSON(), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('organization_id', 'platform', name='uq_integration_org_platform'),
    )
    op.create_index('ix_integrations_organization_id', 'integrations', ['organization_id'])
    op.create_index('ix_integrations_platform_account', 'integrations', ['platform', 'platform_account_id'])

    # =========================================================================
    # Webhook ledger
    # =========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('topic', sa.String(), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('status', webhook_event_status_enum, nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.UniqueConstraint('integration_id', 'external_id', 'topic', name='uq_webhook_event_idempotency'),
    )
    op.create_index('ix_webhook_events_integration_received', 'webhook_events', ['integration_id', 'received_at'])

    # =========================================================================
    # Data points
    # =========================================================================
    op.create_table(
        'data_points',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('integrations.id'), nullable=False),
        sa.Column('metric_type', sa.String(), nullable=False),
        sa.Column('value', sa.Numeric(18, 4), nullable=False),
        sa.Column('date_recorded', sa.DateTime(), nullable=False),
        sa.Column('source_key', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('integration_id', 'metric_type', 'source_key', name='uq_data_point_source'),
    )
    op.create_index(
        'ix_data_points_integration_metric_date',
        'data_points',
        ['integration_id', 'metric_type', 'date_recorded'],
    )

    op.create_table(
        'insights',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('impact_score', sa.Integer(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_insights_organization_id', 'insights', ['organization_id'])


def downgrade() -> None:
    op.drop_index('ix_insights_organization_id', table_name='insights')
    op.drop_table('insights')
    op.drop_index('ix_data_points_integration_metric_date', table_name='data_points')
    op.drop_table('data_points')
    op.drop_index('ix_webhook_events_integration_received', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_integrations_platform_account', table_name='integrations')
    op.drop_index('ix_integrations_organization_id', table_name='integrations')
    op.drop_table('integrations')
    op.drop_table('organization_members')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
    op.drop_index('ix_organizations_slug', table_name='organizations')
    op.drop_table('organizations')

    bind = op.get_bind()
    for enum in (webhook_event_status_enum, integration_status_enum, platform_enum, role_enum):
        enum.drop(bind, checkfirst=True)

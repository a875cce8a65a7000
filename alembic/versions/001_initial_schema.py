"""Initial shared schema for LeadSync

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17

Per-company lead tables are not managed here; they are created on first use
of each tenant database.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'companies',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('subscription_plan', sa.String(20), nullable=False, server_default='free'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'crm_integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('company_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('companies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(30), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='inactive'),
        sa.Column('credentials', sa.JSON(), nullable=False),
        sa.Column('access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('scope', sa.Text(), nullable=True),
        sa.Column('account_info', sa.JSON(), nullable=True),
        sa.Column('auto_sync_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('auto_sync_interval', sa.Integer(), nullable=False, server_default='300'),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('sync_direction', sa.String(20), nullable=False, server_default='bidirectional'),
        sa.Column('lead_field_mapping', sa.JSON(), nullable=False),
        sa.Column('notify_sync_errors', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('notify_sync_success', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('notify_token_expiry', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('total_leads_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_syncs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_syncs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_sync_status', sa.String(20), nullable=True),
        sa.Column('last_sync_message', sa.Text(), nullable=True),
        sa.Column('webhook_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('webhook_url', sa.String(500), nullable=True),
        sa.Column('webhook_secret', sa.String(255), nullable=True),
        sa.Column('webhook_events', sa.JSON(), nullable=True),
        sa.Column('webhook_last_received_at', sa.DateTime(), nullable=True),
        sa.Column('webhook_total_received', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('company_id', 'provider', name='uq_crm_integration_company_provider'),
    )
    op.create_index('ix_crm_integrations_company_id', 'crm_integrations', ['company_id'])
    op.create_index('ix_crm_integrations_status', 'crm_integrations', ['status'])
    op.create_index('ix_crm_integrations_token_expires_at', 'crm_integrations', ['token_expires_at'])

    op.create_table(
        'integration_field_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('crm_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('form_field', sa.String(255), nullable=False),
        sa.Column('crm_field', sa.String(255), nullable=False),
        sa.Column('field_type', sa.String(20), nullable=False, server_default='text'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('integration_id', 'form_field', name='uq_mapping_integration_form_field'),
    )
    op.create_index('ix_field_mappings_integration_id', 'integration_field_mappings', ['integration_id'])

    op.create_table(
        'integration_error_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('crm_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('error_type', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default='false'),
    )
    op.create_index('ix_integration_error_logs_integration_id', 'integration_error_logs', ['integration_id'])

    op.create_table(
        'sync_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('crm_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('trigger_type', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('records_fetched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_imported', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('records_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_details', sa.JSON(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
    )
    op.create_index('ix_sync_logs_integration_id', 'sync_logs', ['integration_id'])
    op.create_index('ix_sync_logs_started_at', 'sync_logs', ['started_at'])
    op.create_index('ix_sync_logs_status', 'sync_logs', ['status'])


def downgrade() -> None:
    op.drop_table('sync_logs')
    op.drop_table('integration_error_logs')
    op.drop_table('integration_field_mappings')
    op.drop_table('crm_integrations')
    op.drop_table('companies')

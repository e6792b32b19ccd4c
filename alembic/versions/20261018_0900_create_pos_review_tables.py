"""create_pos_review_tables

Revision ID: 20261018_0900_pos_review
Revises: None
Create Date: 2026-10-18 09:00:00

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_0900_pos_review'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create accounts, POS integration/location/transaction tables, the webhook
    claim ledger, quota reservations and the send queue bookkeeping tables.
    """
    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('business_name', sa.String(length=255), nullable=False),
        sa.Column('review_url', sa.Text(), nullable=True),
        sa.Column('sms_usage_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('sms_usage_limit', sa.Integer(), server_default='10', nullable=False),
        sa.Column('subscription_status', sa.String(length=20), server_default='trial', nullable=False),
        sa.Column('sms_message_tone', sa.String(length=20), server_default='friendly', nullable=False),
        sa.Column('custom_sms_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table(
        'pos_integrations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('merchant_id', sa.String(length=255), nullable=True),
        sa.Column('shop_domain', sa.String(length=255), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('test_mode', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('test_phone_number', sa.String(length=32), nullable=True),
        sa.Column('consent_confirmed', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'provider', name='uq_pos_integrations_account_provider')
    )
    op.create_index('ix_pos_integrations_merchant_id', 'pos_integrations', ['merchant_id'])
    op.create_index('ix_pos_integrations_shop_domain', 'pos_integrations', ['shop_domain'])

    op.create_table(
        'pos_locations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('pos_integration_id', sa.Integer(), nullable=False),
        sa.Column('external_location_id', sa.String(length=255), nullable=False),
        sa.Column('location_name', sa.String(length=255), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['pos_integration_id'], ['pos_integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pos_integration_id', 'external_location_id', name='uq_pos_locations_integration_location')
    )

    op.create_table(
        'pos_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('pos_integration_id', sa.Integer(), nullable=False),
        sa.Column('external_transaction_id', sa.String(length=255), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('purchase_amount', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('location_name', sa.String(length=255), nullable=True),
        sa.Column('sms_status', sa.String(length=50), server_default='pending', nullable=False),
        sa.Column('skip_reason', sa.Text(), nullable=True),
        sa.Column('sms_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('provider_message_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['pos_integration_id'], ['pos_integrations.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pos_integration_id', 'external_transaction_id', name='uq_pos_transactions_integration_external')
    )
    op.create_index('ix_pos_transactions_recent_contact', 'pos_transactions', ['account_id', 'customer_phone', 'created_at'])
    op.create_index('ix_pos_transactions_sms_status', 'pos_transactions', ['sms_status'])

    op.create_table(
        'pos_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_pos_webhook_events_provider_event')
    )
    op.create_index('ix_pos_webhook_events_claimed_at', 'pos_webhook_events', ['claimed_at'])

    op.create_table(
        'quota_reservations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), server_default='1', nullable=False),
        sa.Column('committed_amount', sa.Integer(), nullable=True),
        sa.Column('state', sa.String(length=20), server_default='reserved', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['transaction_id'], ['pos_transactions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_quota_reservations_state_created', 'quota_reservations', ['state', 'created_at'])
    op.create_index('ix_quota_reservations_transaction', 'quota_reservations', ['transaction_id', 'state'])

    op.create_table(
        'send_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(length=64), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='queued', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('enqueued_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['transaction_id'], ['pos_transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('job_id')
    )
    op.create_index('ix_send_jobs_status', 'send_jobs', ['status'])
    op.create_index('ix_send_jobs_transaction', 'send_jobs', ['transaction_id'])

    op.create_table(
        'dead_letter_jobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('original_job_id', sa.String(length=64), nullable=False),
        sa.Column('transaction_id', sa.Integer(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_type', sa.String(length=100), nullable=True),
        sa.Column('attempts_made', sa.Integer(), nullable=False),
        sa.Column('failed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['transaction_id'], ['pos_transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_dead_letter_jobs_failed_at', 'dead_letter_jobs', ['failed_at'])


def downgrade() -> None:
    """
    Drop all tables in reverse dependency order.
    """
    op.drop_index('ix_dead_letter_jobs_failed_at', table_name='dead_letter_jobs')
    op.drop_table('dead_letter_jobs')

    op.drop_index('ix_send_jobs_transaction', table_name='send_jobs')
    op.drop_index('ix_send_jobs_status', table_name='send_jobs')
    op.drop_table('send_jobs')

    op.drop_index('ix_quota_reservations_transaction', table_name='quota_reservations')
    op.drop_index('ix_quota_reservations_state_created', table_name='quota_reservations')
    op.drop_table('quota_reservations')

    op.drop_index('ix_pos_webhook_events_claimed_at', table_name='pos_webhook_events')
    op.drop_table('pos_webhook_events')

    op.drop_index('ix_pos_transactions_sms_status', table_name='pos_transactions')
    op.drop_index('ix_pos_transactions_recent_contact', table_name='pos_transactions')
    op.drop_table('pos_transactions')

    op.drop_table('pos_locations')

    op.drop_index('ix_pos_integrations_shop_domain', table_name='pos_integrations')
    op.drop_index('ix_pos_integrations_merchant_id', table_name='pos_integrations')
    op.drop_table('pos_integrations')

    op.drop_table('accounts')

"""create_billing_tables

Revision ID: 3f1c9a2b7d10
Revises:
Create Date: 2026-10-19 09:12:44.318207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c9a2b7d10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(50), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('billing_cycle', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('limits', JSON, nullable=False, server_default='{}'),
        sa.Column('features', JSON, nullable=False, server_default='{}'),
        sa.Column('gateway_plan_ids', JSON, nullable=False, server_default='{}'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('plan_id', sa.String(50), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('gateway_subscription_id', sa.String(255), nullable=True),
        sa.Column('gateway_customer_id', sa.String(255), nullable=True),
        sa.Column('checkout_url', sa.String(1024), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('renewal_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_renewal_attempt', sa.DateTime(timezone=True), nullable=True),
        sa.Column('grace_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminders_sent', JSON, nullable=False, server_default='[]'),
        sa.Column('plan_change_kind', sa.String(20), nullable=True),
        sa.Column('plan_change_plan_id', sa.String(50), nullable=True),
        sa.Column('plan_change_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('plan_change_status', sa.String(20), nullable=True),
        sa.Column('plan_change_transaction_id', sa.String(255), nullable=True),
        sa.Column('plan_change_initiated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('plan_change_effective_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancel_immediately', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancellation_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('discount_code', sa.String(50), nullable=True),
        sa.Column('discount_type', sa.String(20), nullable=True),
        sa.Column('discount_value', sa.Numeric(10, 2), nullable=True),
        sa.Column('discount_applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('limits_snapshot', JSON, nullable=False, server_default='{}'),
        sa.Column('quota_warnings', JSON, nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('end_date >= start_date', name='ck_subscriptions_period_order'),
    )
    op.create_index('ix_subscriptions_tenant_id', 'subscriptions', ['tenant_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])
    op.create_index('ix_subscriptions_tenant_status', 'subscriptions', ['tenant_id', 'status'])
    op.create_index('ix_subscriptions_gateway_ref', 'subscriptions', ['provider', 'gateway_subscription_id'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('invoice_number', sa.String(64), nullable=False, unique=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('tax', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='paid'),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('gateway_charge_id', sa.String(255), nullable=False),
        sa.Column('line_items', JSON, nullable=False, server_default='[]'),
        sa.Column('metadata', JSON, nullable=False, server_default='{}'),
        sa.Column('document_url', sa.String(1024), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'gateway_charge_id', name='uq_invoices_provider_charge'),
    )
    op.create_index('ix_invoices_tenant_id', 'invoices', ['tenant_id'])
    op.create_index('ix_invoices_subscription_id', 'invoices', ['subscription_id'])

    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(50), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('provider', 'event_id', name='uq_processed_webhook_events_provider_event'),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('processed_webhook_events')
    op.drop_index('ix_invoices_subscription_id', table_name='invoices')
    op.drop_index('ix_invoices_tenant_id', table_name='invoices')
    op.drop_table('invoices')
    op.drop_index('ix_subscriptions_gateway_ref', table_name='subscriptions')
    op.drop_index('ix_subscriptions_tenant_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_current_period_end', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_tenant_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')

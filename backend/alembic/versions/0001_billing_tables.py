"""Create billing reconciliation tables

Revision ID: 0001_billing_tables
Revises: 
Create Date: 2026-10-16

Creates the billing slice of companies, company subscriptions, the payment
ledger and the webhook attempt ledger.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_billing_tables'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create billing tables."""
    
    op.create_table(
        'companies',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('billing_email', sa.String(255)),
        sa.Column('domain', sa.String(255)),
        sa.Column('subscription_plan', sa.String(32), server_default='free', nullable=False),
        sa.Column('max_employees', sa.Integer, server_default='7', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    
    op.create_table(
        'company_subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('company_id', sa.Uuid(), sa.ForeignKey('companies.id'), nullable=False),
        
        # Commercial terms
        sa.Column('plan', sa.String(32), server_default='free', nullable=False),
        sa.Column('price_per_seat', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('seat_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('billing_cycle', sa.String(16), server_default='monthly', nullable=False),
        sa.Column('next_billing_at', sa.DateTime(timezone=True)),
        sa.Column('status', sa.String(16), server_default='trial', nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default=sa.false(), nullable=False),
        
        # Stripe IDs
        sa.Column('stripe_customer_id', sa.String(255)),
        sa.Column('stripe_subscription_id', sa.String(255)),
        sa.Column('stripe_price_id', sa.String(255)),
        
        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_company_subscriptions_company_id', 'company_subscriptions', ['company_id'], unique=True)
    op.create_index(
        'ix_company_subscriptions_stripe_customer_id',
        'company_subscriptions',
        ['stripe_customer_id'],
        unique=True,
    )
    op.create_index(
        'ix_company_subscriptions_stripe_subscription_id',
        'company_subscriptions',
        ['stripe_subscription_id'],
        unique=True,
    )
    
    op.create_table(
        'payment_history',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('company_id', sa.Uuid(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), sa.ForeignKey('company_subscriptions.id')),
        sa.Column('amount', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('status', sa.String(16), server_default='pending', nullable=False),
        
        # Stripe IDs, the invoice ID is the idempotency key
        sa.Column('stripe_invoice_id', sa.String(255), nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(255)),
        sa.Column('stripe_charge_id', sa.String(255)),
        sa.Column('stripe_customer_id', sa.String(255)),
        sa.Column('stripe_subscription_id', sa.String(255)),
        
        sa.Column('billing_period_start', sa.DateTime(timezone=True)),
        sa.Column('billing_period_end', sa.DateTime(timezone=True)),
        sa.Column('description', sa.Text),
        sa.Column('invoice_number', sa.String(64)),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_payment_history_stripe_invoice_id', 'payment_history', ['stripe_invoice_id'], unique=True)
    op.create_index('ix_payment_history_company_id', 'payment_history', ['company_id'])
    op.create_index('ix_payment_history_stripe_customer_id', 'payment_history', ['stripe_customer_id'])
    op.create_index('ix_payment_history_stripe_subscription_id', 'payment_history', ['stripe_subscription_id'])
    
    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(128), nullable=False),
        sa.Column('status', sa.String(32), server_default='processing', nullable=False),
        sa.Column('attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('last_error', sa.Text),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
    )
    # Index for cleanup queries (delete events older than X days)
    op.create_index(
        'ix_processed_webhook_events_first_seen_at',
        'processed_webhook_events',
        ['first_seen_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_processed_webhook_events_first_seen_at', table_name='processed_webhook_events')
    op.drop_table('processed_webhook_events')
    op.drop_table('payment_history')
    op.drop_table('company_subscriptions')
    op.drop_table('companies')

"""create subscriptions, payments and processed_events tables

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

TIERS = ('picture', 'solo_video', 'collab_video')
SUBSCRIPTION_STATUSES = ('active', 'past_due', 'unpaid', 'paused', 'canceled')
BILLING_CYCLES = ('weekly', 'monthly', 'yearly')
PAYMENT_KINDS = ('subscription_charge', 'tip', 'one_time')
PAYMENT_OUTCOMES = ('pending', 'succeeded', 'failed', 'refunded')


def upgrade() -> None:
    # Create subscriptions table
    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('subscriber_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('creator_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('creator_scope', sa.String(length=64), nullable=False),
        sa.Column('tier', sa.Enum(*TIERS, name='subscription_tier'), nullable=False),
        sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscription_status'), nullable=False),
        sa.Column('billing_cycle', sa.Enum(*BILLING_CYCLES, name='billing_cycle'), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('pending_reconciliation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('subscription_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('current_period_start < current_period_end', name='ck_subscriptions_period_order'),
    )

    # Create indexes
    op.create_index(op.f('ix_subscriptions_subscriber_id'), 'subscriptions', ['subscriber_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_creator_id'), 'subscriptions', ['creator_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_stripe_subscription_id'), 'subscriptions', ['stripe_subscription_id'], unique=True)
    op.create_index(op.f('ix_subscriptions_stripe_customer_id'), 'subscriptions', ['stripe_customer_id'], unique=False)
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'], unique=False)

    # At most one open subscription per (subscriber, creator) pair
    op.create_index(
        'uq_subscriptions_open_pair',
        'subscriptions',
        ['subscriber_id', 'creator_scope'],
        unique=True,
        postgresql_where=sa.text("status <> 'canceled'"),
        sqlite_where=sa.text("status <> 'canceled'"),
    )

    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider_payment_ref', sa.String(length=255), nullable=False),
        sa.Column('subscriber_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('creator_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('subscription_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(length=255), nullable=True),
        sa.Column('kind', sa.Enum(*PAYMENT_KINDS, name='payment_kind'), nullable=False),
        sa.Column('outcome', sa.Enum(*PAYMENT_OUTCOMES, name='payment_outcome'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('refunded_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('payment_metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        sa.CheckConstraint(
            'refunded_amount >= 0 AND refunded_amount <= amount',
            name='ck_payments_refund_bounds',
        ),
    )

    op.create_index(op.f('ix_payments_provider_payment_ref'), 'payments', ['provider_payment_ref'], unique=True)
    op.create_index(op.f('ix_payments_subscriber_id'), 'payments', ['subscriber_id'], unique=False)
    op.create_index(op.f('ix_payments_creator_id'), 'payments', ['creator_id'], unique=False)
    op.create_index(op.f('ix_payments_subscription_id'), 'payments', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_payments_created_at'), 'payments', ['created_at'], unique=False)
    op.create_index('ix_payments_creator_outcome', 'payments', ['creator_id', 'outcome'], unique=False)

    # Create processed_events table (webhook dedup window)
    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('outcome', sa.String(length=20), nullable=False),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index(op.f('ix_processed_events_expires_at'), 'processed_events', ['expires_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_processed_events_expires_at'), table_name='processed_events')
    op.drop_table('processed_events')

    op.drop_index('ix_payments_creator_outcome', table_name='payments')
    op.drop_index(op.f('ix_payments_created_at'), table_name='payments')
    op.drop_index(op.f('ix_payments_subscription_id'), table_name='payments')
    op.drop_index(op.f('ix_payments_creator_id'), table_name='payments')
    op.drop_index(op.f('ix_payments_subscriber_id'), table_name='payments')
    op.drop_index(op.f('ix_payments_provider_payment_ref'), table_name='payments')
    op.drop_table('payments')

    op.drop_index('uq_subscriptions_open_pair', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_stripe_customer_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_stripe_subscription_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_creator_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_subscriber_id'), table_name='subscriptions')
    op.drop_table('subscriptions')

    bind = op.get_bind()
    for enum_name in ('payment_outcome', 'payment_kind', 'billing_cycle', 'subscription_status', 'subscription_tier'):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)

"""Create subscriptions and webhook_events tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_subscriptions_and_webhook_events'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the subscription mirror and the webhook audit log."""

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('plan_id', sa.String(50), nullable=True),

        # Stripe IDs
        sa.Column('external_subscription_id', sa.String(255), nullable=False),
        sa.Column('external_customer_id', sa.String(255), nullable=True),

        sa.Column('status', sa.String(20), server_default='incomplete', nullable=False),

        # Billing period (Unix seconds)
        sa.Column('current_period_start', sa.BigInteger, nullable=True),
        sa.Column('current_period_end', sa.BigInteger, nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default='false', nullable=False),

        # Timestamps (Unix seconds)
        sa.Column('created_at', sa.BigInteger, nullable=False),
        sa.Column('updated_at', sa.BigInteger, nullable=False),

        sa.CheckConstraint(
            "status IN ('incomplete', 'active', 'past_due', 'canceled')",
            name='ck_subscriptions_status',
        ),
    )
    op.create_index(
        'ix_subscriptions_external_subscription_id',
        'subscriptions',
        ['external_subscription_id'],
        unique=True,
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_external_customer_id', 'subscriptions', ['external_customer_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('external_subscription_id', sa.String(255), nullable=True),
        sa.Column('payload', postgresql.JSONB, nullable=True),
        sa.Column('success', sa.Boolean, server_default='false', nullable=False),
        sa.Column('error', sa.Text, nullable=True),
        sa.Column('created_at', sa.BigInteger, nullable=False),
        sa.Column('updated_at', sa.BigInteger, nullable=False),
    )
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'])
    op.create_index(
        'ix_webhook_events_external_subscription_id',
        'webhook_events',
        ['external_subscription_id'],
    )

    # Enable RLS
    op.execute('ALTER TABLE subscriptions ENABLE ROW LEVEL SECURITY')
    op.execute('ALTER TABLE webhook_events ENABLE ROW LEVEL SECURITY')

    # RLS Policy: Users can only see their own subscriptions
    op.execute("""
        CREATE POLICY "Users can view own subscriptions"
        ON subscriptions FOR SELECT
        TO authenticated
        USING (user_id = auth.uid()::text)
    """)

    # RLS Policy: Service role can manage all subscriptions (webhooks, enforcer, admin)
    op.execute("""
        CREATE POLICY "Service role manages subscriptions"
        ON subscriptions FOR ALL
        TO service_role
        USING (true)
        WITH CHECK (true)
    """)

    # RLS Policy: Audit log is service role only
    op.execute("""
        CREATE POLICY "Service role manages webhook events"
        ON webhook_events FOR ALL
        TO service_role
        USING (true)
        WITH CHECK (true)
    """)


def downgrade() -> None:
    """Drop both tables."""

    # Drop policies
    op.execute('DROP POLICY IF EXISTS "Service role manages webhook events" ON webhook_events')
    op.execute('DROP POLICY IF EXISTS "Users can view own subscriptions" ON subscriptions')
    op.execute('DROP POLICY IF EXISTS "Service role manages subscriptions" ON subscriptions')

    op.drop_index('ix_webhook_events_external_subscription_id', table_name='webhook_events')
    op.drop_index('ix_webhook_events_event_id', table_name='webhook_events')
    op.drop_table('webhook_events')

    op.drop_index('ix_subscriptions_external_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_external_subscription_id', table_name='subscriptions')
    op.drop_table('subscriptions')

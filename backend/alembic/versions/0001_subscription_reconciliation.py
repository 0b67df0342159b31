"""Create subscription reconciliation tables

Revision ID: 0001_subscription_reconciliation
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_subscription_reconciliation'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscriptions, billing history, idempotency and audit tables."""

    op.create_table(
        'unified_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False, index=True),
        sa.Column('product_id', sa.String(255), nullable=False, index=True),
        sa.Column('product_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('subscription_type', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending', index=True),

        # Provider correlation
        sa.Column('external_reference', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('provider_subscription_id', sa.String(255), index=True),

        # Pricing
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('discounted_price', sa.Numeric(10, 2)),

        # Billing
        sa.Column('charges_made', sa.Integer, nullable=False, server_default='0'),
        sa.Column('activated_at', sa.DateTime(timezone=True)),
        sa.Column('last_billing_date', sa.DateTime(timezone=True)),
        sa.Column('next_billing_date', sa.DateTime(timezone=True)),

        sa.Column('customer_data', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('metadata', postgresql.JSONB, nullable=False, server_default='{}'),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Sweep and duplicate lookups filter by owner, product and status
    op.create_index(
        'ix_unified_subscriptions_user_product_status',
        'unified_subscriptions',
        ['user_id', 'product_id', 'status']
    )
    op.execute(
        "CREATE INDEX ix_unified_subscriptions_metadata "
        "ON unified_subscriptions USING gin (metadata)"
    )

    op.create_table(
        'subscription_billing_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'subscription_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('unified_subscriptions.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column('user_id', sa.String(255)),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='MXN'),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('provider_payment_id', sa.String(255), index=True),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'idempotency_locks',
        sa.Column('lock_key', sa.String(64), primary_key=True),
        sa.Column('owner', sa.String(64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'idempotency_results',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('result', postgresql.JSONB, nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'subscription_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False, index=True),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('success', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('duration_ms', sa.Integer),
        sa.Column('subscription_id', sa.String(64), index=True),
        sa.Column('payload', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    """Drop the reconciliation tables."""
    op.drop_table('subscription_logs')
    op.drop_table('idempotency_results')
    op.drop_table('idempotency_locks')
    op.drop_table('subscription_billing_history')
    op.execute('DROP INDEX IF EXISTS ix_unified_subscriptions_metadata')
    op.drop_index('ix_unified_subscriptions_user_product_status', table_name='unified_subscriptions')
    op.drop_table('unified_subscriptions')

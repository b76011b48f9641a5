"""Create orders and payments tables.

Revision ID: 0001_orders_payments
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_orders_payments'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('order_items', sa.JSON(), nullable=False),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('items_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('shipping_price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=False, server_default='card'),
        sa.Column('payment_status', sa.String(30), nullable=True),
        sa.Column('is_paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_result', sa.JSON(), nullable=True),
        sa.Column('payment_timestamps', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('current_payment_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('is_delivered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
    )

    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('orders.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='inr'),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('gateway', sa.String(20), nullable=False, server_default='mock'),
        # Sparse uniqueness: NULLs (cash without an id) never collide
        sa.Column('transaction_id', sa.String(255), nullable=True, unique=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('card_brand', sa.String(20), nullable=True),
        sa.Column('card_expiry', sa.String(7), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False),
    )

    # Reconciliation scans pending work by status
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])


def downgrade() -> None:
    op.drop_index('ix_orders_payment_status', table_name='orders')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_table('payments')
    op.drop_table('orders')

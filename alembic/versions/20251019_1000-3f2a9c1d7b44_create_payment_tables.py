"""create_payment_tables

Revision ID: 3f2a9c1d7b44
Revises:
Create Date: 2025-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7b44'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=18, scale=4)


def upgrade() -> None:
    # 订单与支付方式（上游系统维护，这里仅建表供本服务读取）
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=100), nullable=False, comment='订单ID'),
        sa.Column('buyer_id', sa.String(length=100), nullable=False, comment='买家ID'),
        sa.Column('total_amount', MONEY, nullable=False, comment='订单总额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='pending', comment='订单状态'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_buyer_id', 'orders', ['buyer_id'])

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.String(length=100), nullable=False, comment='支付方式ID'),
        sa.Column('owner_id', sa.String(length=100), nullable=True, comment='所属用户'),
        sa.Column('gateway_id', sa.String(length=50), nullable=False, comment='网关ID'),
        sa.Column('type', sa.String(length=30), nullable=False, server_default='card'),
        sa.Column('customer_name', sa.String(length=200), nullable=True),
        sa.Column('customer_email', sa.String(length=200), nullable=True),
        sa.Column('customer_phone', sa.String(length=50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_methods_owner_id', 'payment_methods', ['owner_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=100), nullable=False, comment='订单ID'),
        sa.Column('active_order_key', sa.String(length=100), nullable=True, comment='活跃支付占位键'),
        sa.Column('payer_id', sa.String(length=100), nullable=True, comment='付款人ID'),
        sa.Column('payment_method_id', sa.String(length=100), nullable=False, comment='支付方式ID'),
        sa.Column('gateway_id', sa.String(length=50), nullable=False, comment='网关ID'),
        sa.Column('transaction_id', sa.String(length=200), nullable=True, comment='发起时网关返回的交易号'),
        sa.Column('gateway_transaction_id', sa.String(length=200), nullable=True, comment='网关侧交易号'),
        sa.Column('amount', MONEY, nullable=False, comment='支付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='支付状态'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('ip_address', sa.String(length=64), nullable=True, comment='客户端IP'),
        sa.Column('user_agent', sa.String(length=500), nullable=True, comment='客户端UA'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='处理完成时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('active_order_key'),
    )
    op.create_index('ix_payments_id', 'payments', ['id'])
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_payer_id', 'payments', ['payer_id'])
    op.create_index('ix_payments_gateway_id', 'payments', ['gateway_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])
    op.create_index('ix_payments_payer_status', 'payments', ['payer_id', 'status'])
    op.create_index('ix_payments_gateway_txn', 'payments', ['gateway_id', 'transaction_id'])
    op.create_index('ix_payments_gateway_gw_txn', 'payments', ['gateway_id', 'gateway_transaction_id'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('order_id', sa.String(length=100), nullable=False, comment='订单ID'),
        sa.Column('amount', MONEY, nullable=False, comment='退款金额'),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='退款状态'),
        sa.Column('reason', sa.String(length=30), nullable=False, comment='退款原因'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('requested_by', sa.String(length=100), nullable=True),
        sa.Column('gateway_refund_id', sa.String(length=200), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refunds_id', 'refunds', ['id'])
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'])
    op.create_index('ix_refunds_order_id', 'refunds', ['order_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])
    op.create_index('ix_refunds_created_at', 'refunds', ['created_at'])
    op.create_index('ix_refunds_gateway_refund_id', 'refunds', ['gateway_refund_id'])
    op.create_index('ix_refunds_payment_status', 'refunds', ['payment_id', 'status'])

    # 交易账本：只追加
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('refund_id', sa.Integer(), nullable=True),
        sa.Column('type', sa.String(length=10), nullable=False, comment='charge/refund'),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, comment='completed/failed'),
        sa.Column('gateway_transaction_id', sa.String(length=200), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['refund_id'], ['refunds.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_transactions_id', 'payment_transactions', ['id'])
    op.create_index('ix_payment_transactions_payment_id', 'payment_transactions', ['payment_id'])
    op.create_index(
        'ix_payment_transactions_payment_type', 'payment_transactions', ['payment_id', 'type', 'status']
    )

    op.create_table(
        'payment_webhooks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('gateway_id', sa.String(length=50), nullable=False),
        sa.Column('event_id', sa.String(length=200), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('signature', sa.String(length=500), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_id', 'event_id', name='uq_payment_webhooks_gateway_event'),
    )
    op.create_index('ix_payment_webhooks_id', 'payment_webhooks', ['id'])
    op.create_index('ix_payment_webhooks_payment_id', 'payment_webhooks', ['payment_id'])


def downgrade() -> None:
    op.drop_table('payment_webhooks')
    op.drop_table('payment_transactions')
    op.drop_table('refunds')
    op.drop_table('payments')
    op.drop_table('payment_methods')
    op.drop_table('orders')

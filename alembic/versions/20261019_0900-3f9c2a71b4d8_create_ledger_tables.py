"""create_ledger_tables

Revision ID: 3f9c2a71b4d8
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f9c2a71b4d8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=12, scale=2)


def upgrade() -> None:
    op.create_table(
        'affiliates',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False, comment='推广码'),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active',
                  comment='状态: active/inactive/suspended'),
        sa.Column('commission_type', sa.String(length=20), nullable=False, server_default='percentage',
                  comment='佣金类型: percentage/fixed'),
        sa.Column('commission_value', MONEY, nullable=False, comment='百分比或固定金额'),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_revenue', MONEY, nullable=False, server_default='0'),
        sa.Column('total_commission', MONEY, nullable=False, server_default='0'),
        sa.Column('pending_commission', MONEY, nullable=False, server_default='0'),
        sa.Column('paid_commission', MONEY, nullable=False, server_default='0'),
        sa.Column('total_paid_out', MONEY, nullable=False, server_default='0'),
        sa.Column('payout_provider', sa.String(length=30), nullable=False, server_default='stripe'),
        sa.Column('payout_account_ref', sa.String(length=200), nullable=True, comment='收款账户ID（Stripe Connect 等）'),
        sa.Column('payout_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('charges_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('details_submitted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payout_automation_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_payout_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_affiliates_code', 'affiliates', ['code'], unique=True)
    op.create_index('ix_affiliates_status', 'affiliates', ['status'])
    op.create_index('ix_affiliates_payout_account_ref', 'affiliates', ['payout_account_ref'])

    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=True, comment='买家用户ID'),
        sa.Column('email', sa.String(length=255), nullable=False, comment='买家邮箱'),
        sa.Column('subtotal', MONEY, nullable=False, comment='商品快照金额合计'),
        sa.Column('discount_amount', MONEY, nullable=False, server_default='0', comment='优惠金额'),
        sa.Column('total', MONEY, nullable=False, comment='实付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='ISO-4217 币种'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='订单状态: pending/completed/cancelled/refunded'),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='支付状态: pending/paid/failed/cancelled/refunded'),
        sa.Column('provider', sa.String(length=30), nullable=False, comment='支付提供商: stripe/paypal/mercadopago'),
        sa.Column('provider_ref', sa.String(length=200), nullable=True,
                  comment='支付渠道的支付ID: payment intent / order / preference'),
        sa.Column('charge_ref', sa.String(length=200), nullable=True,
                  comment='已结算的 charge ID，分账转账的资金来源'),
        sa.Column('coupon_code', sa.String(length=64), nullable=True, comment='使用的优惠码'),
        sa.Column('affiliate_id', sa.String(length=36), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['affiliate_id'], ['affiliates.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_orders_provider_ref'),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_affiliate_id', 'orders', ['affiliate_id'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('variation_id', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False, comment='商品名称快照'),
        sa.Column('unit_price', MONEY, nullable=False, comment='单价快照'),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'coupons',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('discount_type', sa.String(length=20), nullable=False, comment='佣金类型: percentage/fixed'),
        sa.Column('value', MONEY, nullable=False),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_coupons_code', 'coupons', ['code'], unique=True)

    op.create_table(
        'coupon_redemptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('coupon_id', sa.String(length=36), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('amount_discounted', MONEY, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.String(length=36), nullable=True),
        sa.Column('redeemed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index('ix_coupon_redemptions_coupon_id', 'coupon_redemptions', ['coupon_id'])
    op.create_index('ix_coupon_redemptions_coupon', 'coupon_redemptions', ['coupon_id', 'redeemed_at'])

    op.create_table(
        'affiliate_commissions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('affiliate_id', sa.String(length=36), nullable=False),
        sa.Column('order_id', sa.String(length=36), nullable=False),
        sa.Column('order_total', MONEY, nullable=False),
        sa.Column('commission_type', sa.String(length=20), nullable=False),
        sa.Column('commission_rate', MONEY, nullable=False),
        sa.Column('commission_amount', MONEY, nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='佣金状态: pending/approved/paid/cancelled'),
        sa.Column('transfer_id', sa.String(length=200), nullable=True),
        sa.Column('transfer_status', sa.String(length=20), nullable=False, server_default='none',
                  comment='转账状态: none/processing/completed/failed'),
        sa.Column('transfer_attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('transfer_error', sa.Text(), nullable=True),
        sa.Column('last_transfer_attempt', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['affiliate_id'], ['affiliates.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('affiliate_id', 'order_id', name='uq_commission_affiliate_order'),
    )
    op.create_index('ix_affiliate_commissions_affiliate_id', 'affiliate_commissions', ['affiliate_id'])
    op.create_index('ix_affiliate_commissions_order_id', 'affiliate_commissions', ['order_id'])
    op.create_index('ix_affiliate_commissions_status', 'affiliate_commissions', ['status'])
    op.create_index('ix_affiliate_commissions_transfer_id', 'affiliate_commissions', ['transfer_id'])
    op.create_index('ix_affiliate_commissions_created_at', 'affiliate_commissions', ['created_at'])
    op.create_index('ix_commissions_payable', 'affiliate_commissions',
                    ['affiliate_id', 'status', 'transfer_attempt_count'])

    op.create_table(
        'processed_webhook_events',
        sa.Column('event_key', sa.String(length=255), nullable=False, comment='去重键: <provider>:<event id>'),
        sa.Column('provider', sa.String(length=30), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('event_key'),
    )
    op.create_index('ix_processed_webhook_events_expires_at', 'processed_webhook_events', ['expires_at'])


def downgrade() -> None:
    op.drop_table('processed_webhook_events')
    op.drop_table('affiliate_commissions')
    op.drop_table('coupon_redemptions')
    op.drop_table('coupons')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('affiliates')

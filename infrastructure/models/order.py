"""
订单账本数据库模型 - SQLAlchemy ORM映射

这是数据库表的映射，不包含业务逻辑
所有业务规则都在 domain.order.entity 中
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean,
    Index, ForeignKey, UniqueConstraint
)
from datetime import datetime, timezone

from .base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=True, index=True, comment="买家用户ID")
    email = Column(String(255), nullable=False, comment="买家邮箱")

    # 金额
    subtotal = Column(Numeric(precision=12, scale=2), nullable=False, comment="商品快照金额合计")
    discount_amount = Column(Numeric(precision=12, scale=2), nullable=False, default=0, comment="优惠金额")
    total = Column(Numeric(precision=12, scale=2), nullable=False, comment="实付金额")
    currency = Column(String(3), nullable=False, comment="ISO-4217 币种")

    # 状态机
    status = Column(String(20), nullable=False, default="pending", index=True,
                    comment="订单状态: pending/completed/cancelled/refunded")
    payment_status = Column(String(20), nullable=False, default="pending", index=True,
                            comment="支付状态: pending/paid/failed/cancelled/refunded")

    # 支付渠道信息
    provider = Column(String(30), nullable=False, comment="支付提供商: stripe/paypal/mercadopago")
    provider_ref = Column(String(200), nullable=True, comment="支付渠道的支付ID: payment intent / order / preference")
    charge_ref = Column(String(200), nullable=True, comment="已结算的 charge ID，分账转账的资金来源")

    coupon_code = Column(String(64), nullable=True, comment="使用的优惠码")
    affiliate_id = Column(String(36), ForeignKey("affiliates.id"), nullable=True, index=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_orders_provider_ref"),
    )

    def __repr__(self):
        return f"<OrderModel(id='{self.id}', status='{self.status}', total={self.total})>"


class OrderItemModel(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    variation_id = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False, comment="商品名称快照")
    unit_price = Column(Numeric(precision=12, scale=2), nullable=False, comment="单价快照")
    quantity = Column(Integer, nullable=False)


class CouponModel(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    discount_type = Column(String(20), nullable=False, comment="佣金类型: percentage/fixed")
    value = Column(Numeric(precision=12, scale=2), nullable=False)
    used_count = Column(Integer, nullable=False, default=0)
    max_uses = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CouponRedemptionModel(Base):
    __tablename__ = "coupon_redemptions"

    id = Column(String(36), primary_key=True)
    coupon_id = Column(String(36), ForeignKey("coupons.id"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)
    amount_discounted = Column(Numeric(precision=12, scale=2), nullable=False)
    email = Column(String(255), nullable=True)
    user_id = Column(String(36), nullable=True)
    redeemed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_coupon_redemptions_coupon", "coupon_id", "redeemed_at"),
    )

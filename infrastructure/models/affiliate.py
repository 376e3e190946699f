"""
推广者与佣金数据库模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    Index, ForeignKey, UniqueConstraint
)
from datetime import datetime, timezone

from .base import Base


def _utcnow():
    return datetime.now(timezone.utc)


class AffiliateModel(Base):
    __tablename__ = "affiliates"

    id = Column(String(36), primary_key=True)
    code = Column(String(64), nullable=False, unique=True, index=True, comment="推广码")
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active", index=True,
                    comment="状态: active/inactive/suspended")

    commission_type = Column(String(20), nullable=False, default="percentage", comment="佣金类型: percentage/fixed")
    commission_value = Column(Numeric(precision=12, scale=2), nullable=False, comment="百分比或固定金额")

    # 聚合统计，只通过原子 UPDATE 语句修改
    total_orders = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Numeric(precision=12, scale=2), nullable=False, default=0)
    total_commission = Column(Numeric(precision=12, scale=2), nullable=False, default=0)
    pending_commission = Column(Numeric(precision=12, scale=2), nullable=False, default=0)
    paid_commission = Column(Numeric(precision=12, scale=2), nullable=False, default=0)
    total_paid_out = Column(Numeric(precision=12, scale=2), nullable=False, default=0)

    # 收款账户
    payout_provider = Column(String(30), nullable=False, default="stripe")
    payout_account_ref = Column(String(200), nullable=True, index=True, comment="收款账户ID（Stripe Connect 等）")
    payout_enabled = Column(Boolean, nullable=False, default=False)
    charges_enabled = Column(Boolean, nullable=False, default=False)
    details_submitted = Column(Boolean, nullable=False, default=False)
    payout_automation_enabled = Column(Boolean, nullable=False, default=False)
    last_payout_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<AffiliateModel(id='{self.id}', code='{self.code}', status='{self.status}')>"


class AffiliateCommissionModel(Base):
    __tablename__ = "affiliate_commissions"

    id = Column(String(36), primary_key=True)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)

    order_total = Column(Numeric(precision=12, scale=2), nullable=False)
    commission_type = Column(String(20), nullable=False)
    commission_rate = Column(Numeric(precision=12, scale=2), nullable=False)
    commission_amount = Column(Numeric(precision=12, scale=2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True,
                    comment="佣金状态: pending/approved/paid/cancelled")

    # 转账记录
    transfer_id = Column(String(200), nullable=True, index=True)
    transfer_status = Column(String(20), nullable=False, default="none",
                             comment="转账状态: none/processing/completed/failed")
    transfer_attempt_count = Column(Integer, nullable=False, default=0)
    transfer_error = Column(Text, nullable=True)
    last_transfer_attempt = Column(DateTime(timezone=True), nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("affiliate_id", "order_id", name="uq_commission_affiliate_order"),
        Index("ix_commissions_payable", "affiliate_id", "status", "transfer_attempt_count"),
    )

    def __repr__(self):
        return (
            f"<AffiliateCommissionModel(id='{self.id}', status='{self.status}', "
            f"amount={self.commission_amount}, attempts={self.transfer_attempt_count})>"
        )

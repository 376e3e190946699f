"""
推广者与佣金实体
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.common.money import to_money, ZERO


class AffiliateStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class CommissionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


class TransferStatus(str, Enum):
    NONE = "none"
    PROCESSING = "processing"      # transfer created, awaiting provider confirmation
    COMPLETED = "completed"        # confirmed by the provider
    FAILED = "failed"


# 金额仍计入 pending_commission 的佣金状态
UNPAID_STATUSES = (CommissionStatus.PENDING, CommissionStatus.APPROVED)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def compute_commission(order_total: Decimal, commission_type: CommissionType, rate: Decimal) -> Decimal:
    """百分比费率以百分数表示（20 表示 20%）"""
    if commission_type == CommissionType.PERCENTAGE:
        return to_money(to_money(order_total) * to_money(rate) / Decimal(100))
    return to_money(rate)


@dataclass
class Affiliate:
    """
    推广者实体，带佣金聚合统计

    不变量：pending_commission + paid_commission <= total_commission，
    且 pending_commission >= 0。聚合字段只通过仓储的原子操作修改。
    """

    id: str
    code: str
    name: str
    email: str
    commission_type: CommissionType
    commission_value: Decimal
    status: AffiliateStatus = AffiliateStatus.ACTIVE
    total_orders: int = 0
    total_revenue: Decimal = ZERO
    total_commission: Decimal = ZERO
    pending_commission: Decimal = ZERO
    paid_commission: Decimal = ZERO
    total_paid_out: Decimal = ZERO
    payout_provider: str = "stripe"
    payout_account_ref: Optional[str] = None
    payout_enabled: bool = False
    charges_enabled: bool = False
    details_submitted: bool = False
    payout_automation_enabled: bool = False
    last_payout_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.commission_value = to_money(self.commission_value)
        if self.commission_value < 0:
            raise DomainValidationException("Commission value must not be negative", field="commission_value")
        if self.commission_type == CommissionType.PERCENTAGE and self.commission_value > 100:
            raise DomainValidationException("Commission percentage must not exceed 100", field="commission_value")
        for name in ("total_revenue", "total_commission", "pending_commission", "paid_commission", "total_paid_out"):
            setattr(self, name, to_money(getattr(self, name)))
        self.last_payout_at = _ensure_utc(self.last_payout_at)
        self.created_at = _ensure_utc(self.created_at) or datetime.now(timezone.utc)
        self.updated_at = _ensure_utc(self.updated_at) or self.created_at

    @property
    def is_active(self) -> bool:
        return self.status == AffiliateStatus.ACTIVE

    @property
    def is_payout_eligible(self) -> bool:
        return self.is_active and bool(self.payout_account_ref) and self.payout_enabled

    def commission_for(self, order_total: Decimal) -> Decimal:
        return compute_commission(order_total, self.commission_type, self.commission_value)

    def aggregates_consistent(self) -> bool:
        return (
            self.pending_commission >= 0
            and self.pending_commission + self.paid_commission <= self.total_commission
        )


@dataclass
class AffiliateCommission:
    """一笔已支付订单应付给推广者的佣金"""

    id: str
    affiliate_id: str
    order_id: str
    order_total: Decimal
    commission_type: CommissionType
    commission_rate: Decimal
    commission_amount: Decimal
    currency: str
    status: CommissionStatus = CommissionStatus.PENDING
    transfer_id: Optional[str] = None
    transfer_status: TransferStatus = TransferStatus.NONE
    transfer_attempt_count: int = 0
    transfer_error: Optional[str] = None
    last_transfer_attempt: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.order_total = to_money(self.order_total)
        self.commission_rate = to_money(self.commission_rate)
        self.commission_amount = to_money(self.commission_amount)
        if self.commission_amount < 0:
            raise DomainValidationException("Commission amount must not be negative", field="commission_amount")
        self.last_transfer_attempt = _ensure_utc(self.last_transfer_attempt)
        self.paid_at = _ensure_utc(self.paid_at)
        self.approved_at = _ensure_utc(self.approved_at)
        self.created_at = _ensure_utc(self.created_at) or datetime.now(timezone.utc)
        self.updated_at = _ensure_utc(self.updated_at) or self.created_at

    @property
    def has_successful_transfer(self) -> bool:
        return bool(self.transfer_id) and self.transfer_status != TransferStatus.FAILED

    def is_transfer_eligible(self, max_attempts: int, *, ignore_ceiling: bool = False) -> bool:
        if self.status != CommissionStatus.APPROVED or self.has_successful_transfer:
            return False
        return ignore_ceiling or self.transfer_attempt_count < max_attempts

    def recomputed_amount(self) -> Decimal:
        return compute_commission(self.order_total, self.commission_type, self.commission_rate)

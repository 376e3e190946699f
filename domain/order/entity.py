"""
订单聚合 - 订单、订单明细与优惠券使用记录
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from domain.common.exceptions import (
    DomainValidationException,
    IllegalOrderTransitionException,
    CouponNotRedeemableException,
)
from domain.common.money import to_money, ZERO


class OrderStatus(str, Enum):
    """订单业务状态"""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderPaymentStatus(str, Enum):
    """支付状态，与 OrderStatus 并行维护"""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderTransition(str, Enum):
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"
    REFUND = "refund"


@dataclass(frozen=True)
class TransitionRule:
    sources: frozenset
    target: OrderStatus
    target_payment: OrderPaymentStatus


# 订单仅允许的状态流转
ORDER_TRANSITIONS: dict[OrderTransition, TransitionRule] = {
    OrderTransition.COMPLETE: TransitionRule(
        frozenset({OrderStatus.PENDING}), OrderStatus.COMPLETED, OrderPaymentStatus.PAID
    ),
    OrderTransition.FAIL: TransitionRule(
        frozenset({OrderStatus.PENDING}), OrderStatus.CANCELLED, OrderPaymentStatus.FAILED
    ),
    OrderTransition.CANCEL: TransitionRule(
        frozenset({OrderStatus.PENDING}), OrderStatus.CANCELLED, OrderPaymentStatus.CANCELLED
    ),
    OrderTransition.REFUND: TransitionRule(
        frozenset({OrderStatus.COMPLETED}), OrderStatus.REFUNDED, OrderPaymentStatus.REFUNDED
    ),
}


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class OrderItem:
    """订单明细快照；创建后不再重新计算价格"""

    id: str
    order_id: str
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    variation_id: Optional[str] = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise DomainValidationException(
                f"Quantity must be positive: {self.quantity}", field="quantity"
            )
        if self.unit_price < 0:
            raise DomainValidationException(
                f"Unit price must not be negative: {self.unit_price}", field="unit_price"
            )

    @property
    def total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. total = subtotal - |discount_amount|，且 total >= 0
    2. status/payment_status 只能按 ORDER_TRANSITIONS 流转
    3. 涉及资金的副作用只使用 total
    """

    id: str
    email: str
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal
    currency: str
    provider: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: OrderPaymentStatus = OrderPaymentStatus.PENDING
    user_id: Optional[str] = None
    provider_ref: Optional[str] = None
    charge_ref: Optional[str] = None
    coupon_code: Optional[str] = None
    affiliate_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: list[OrderItem] = field(default_factory=list)

    def __post_init__(self):
        self.subtotal = to_money(self.subtotal)
        self.discount_amount = to_money(self.discount_amount)
        self.total = to_money(self.total)
        self._validate_currency()
        self._validate_amounts()
        self.paid_at = _ensure_utc(self.paid_at)
        self.created_at = _ensure_utc(self.created_at) or datetime.now(timezone.utc)
        self.updated_at = _ensure_utc(self.updated_at) or self.created_at

    @classmethod
    def create(
        cls,
        *,
        email: str,
        currency: str,
        provider: str,
        items: list[dict],
        coupon: Optional["Coupon"] = None,
        user_id: Optional[str] = None,
        affiliate_id: Optional[str] = None,
    ) -> "Order":
        if not items:
            raise DomainValidationException("Order requires at least one item", field="items")
        order_id = new_id()
        snapshot = [
            OrderItem(
                id=new_id(),
                order_id=order_id,
                product_id=item["product_id"],
                variation_id=item.get("variation_id"),
                name=item["name"],
                unit_price=to_money(item["unit_price"]),
                quantity=int(item.get("quantity", 1)),
            )
            for item in items
        ]
        subtotal = to_money(sum((i.total for i in snapshot), ZERO))
        discount = coupon.discount_for(subtotal) if coupon is not None else ZERO
        now = datetime.now(timezone.utc)
        return cls(
            id=order_id,
            email=email,
            user_id=user_id,
            subtotal=subtotal,
            discount_amount=discount,
            total=subtotal - abs(discount),
            currency=currency.upper(),
            provider=provider.lower(),
            coupon_code=coupon.code if coupon is not None else None,
            affiliate_id=affiliate_id,
            created_at=now,
            updated_at=now,
            items=snapshot,
        )

    def _validate_currency(self) -> None:
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"Invalid currency: {self.currency}", field="currency")

    def _validate_amounts(self) -> None:
        if self.subtotal < 0:
            raise DomainValidationException(f"Subtotal must not be negative: {self.subtotal}", field="subtotal")
        if self.total != self.subtotal - abs(self.discount_amount):
            raise DomainValidationException(
                "Order total must equal subtotal minus discount",
                field="total",
                details={"subtotal": str(self.subtotal), "discount": str(self.discount_amount), "total": str(self.total)},
            )
        if self.total < 0:
            raise DomainValidationException(f"Order total must not be negative: {self.total}", field="total")

    # --- 状态机 ---------------------------------------------------------

    def is_in_target_of(self, transition: OrderTransition) -> bool:
        rule = ORDER_TRANSITIONS[transition]
        return self.status == rule.target and self.payment_status == rule.target_payment

    def can_apply(self, transition: OrderTransition) -> bool:
        """可以流转返回 True，已处于目标状态返回 False

        其他情况抛出 IllegalOrderTransitionException
        """
        if self.is_in_target_of(transition):
            return False
        rule = ORDER_TRANSITIONS[transition]
        if self.status not in rule.sources:
            raise IllegalOrderTransitionException(self.id, self.status.value, transition.value)
        return True

    def apply(self, transition: OrderTransition, *, at: Optional[datetime] = None) -> None:
        if not self.can_apply(transition):
            return
        rule = ORDER_TRANSITIONS[transition]
        now = at or datetime.now(timezone.utc)
        self.status = rule.target
        self.payment_status = rule.target_payment
        if transition is OrderTransition.COMPLETE:
            self.paid_at = now
        self.updated_at = now

    @property
    def is_paid(self) -> bool:
        return self.status == OrderStatus.COMPLETED and self.payment_status == OrderPaymentStatus.PAID


@dataclass
class Coupon:
    id: str
    code: str
    discount_type: DiscountType
    value: Decimal
    used_count: int = 0
    max_uses: Optional[int] = None
    is_active: bool = True

    def __post_init__(self):
        self.value = to_money(self.value)
        if self.value < 0:
            raise DomainValidationException("Coupon value must not be negative", field="value")

    def ensure_redeemable(self) -> None:
        if not self.is_active:
            raise CouponNotRedeemableException(self.code, "inactive")
        if self.max_uses is not None and self.used_count >= self.max_uses:
            raise CouponNotRedeemableException(self.code, "usage limit reached")

    def discount_for(self, subtotal: Decimal) -> Decimal:
        """计算小计对应的折扣金额，不超过小计"""
        if self.discount_type == DiscountType.PERCENTAGE:
            discount = to_money(subtotal * self.value / Decimal(100))
        else:
            discount = self.value
        return min(to_money(discount), to_money(subtotal))


@dataclass
class CouponRedemption:
    id: str
    coupon_id: str
    order_id: str
    amount_discounted: Decimal
    email: Optional[str] = None
    user_id: Optional[str] = None
    redeemed_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount_discounted = to_money(self.amount_discounted)
        self.redeemed_at = _ensure_utc(self.redeemed_at) or datetime.now(timezone.utc)

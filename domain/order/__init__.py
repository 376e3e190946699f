from .entity import (
    Order,
    OrderItem,
    OrderStatus,
    OrderPaymentStatus,
    OrderTransition,
    ORDER_TRANSITIONS,
    Coupon,
    CouponRedemption,
    DiscountType,
)
from .service import OrderLedgerDomainService, TransitionOutcome

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderPaymentStatus",
    "OrderTransition",
    "ORDER_TRANSITIONS",
    "Coupon",
    "CouponRedemption",
    "DiscountType",
    "OrderLedgerDomainService",
    "TransitionOutcome",
]

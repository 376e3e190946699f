"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel, OrderItemModel, CouponModel, CouponRedemptionModel
from .affiliate import AffiliateModel, AffiliateCommissionModel
from .webhook_event import ProcessedWebhookEventModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "OrderItemModel",
    "CouponModel",
    "CouponRedemptionModel",
    "AffiliateModel",
    "AffiliateCommissionModel",
    "ProcessedWebhookEventModel",
]

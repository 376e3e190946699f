"""
账本 DTO - 应用层与 API/异步任务之间传递的数据
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_serializer
from pydantic.types import condecimal

from domain.affiliate.entity import AffiliateCommission
from domain.order.entity import Order


class DTOBase(BaseModel):
    """时间统一序列化为带 Z 后缀的 UTC，Decimal 序列化为字符串"""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
                return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
            if isinstance(value, Decimal):
                return str(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


# ---- 请求 ------------------------------------------------------------------

class OrderItemInput(DTOBase):
    product_id: str = Field(..., min_length=1, max_length=64)
    variation_id: Optional[str] = Field(None, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    unit_price: condecimal(ge=0, max_digits=12, decimal_places=2)  # type: ignore[valid-type]
    quantity: int = Field(1, ge=1, le=1000)


class CreateOrder(DTOBase):
    email: EmailStr
    currency: str = Field("USD", description="ISO-4217 alpha-3")
    provider: Literal["stripe", "paypal", "mercadopago"] = "stripe"
    items: list[OrderItemInput] = Field(..., min_length=1)
    coupon_code: Optional[str] = Field(None, max_length=64)
    affiliate_code: Optional[str] = Field(None, max_length=64)
    user_id: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        u = (v or "").upper()
        if len(u) != 3 or not u.isalpha():
            raise ValueError("currency must be ISO-4217 alpha-3")
        return u


# ---- 响应 ------------------------------------------------------------------

class OrderItemDTO(DTOBase):
    product_id: str
    variation_id: Optional[str] = None
    name: str
    unit_price: Decimal
    quantity: int


class OrderDTO(DTOBase):
    id: str
    email: str
    status: str
    payment_status: str
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal
    currency: str
    provider: str
    provider_ref: Optional[str] = None
    coupon_code: Optional[str] = None
    affiliate_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    items: list[OrderItemDTO] = Field(default_factory=list)
    client_params: Optional[dict[str, Any]] = None

    @classmethod
    def from_entity(cls, order: Order, client_params: Optional[dict[str, Any]] = None) -> "OrderDTO":
        return cls(
            id=order.id,
            email=order.email,
            status=order.status.value,
            payment_status=order.payment_status.value,
            subtotal=order.subtotal,
            discount_amount=order.discount_amount,
            total=order.total,
            currency=order.currency,
            provider=order.provider,
            provider_ref=order.provider_ref,
            coupon_code=order.coupon_code,
            affiliate_id=order.affiliate_id,
            paid_at=order.paid_at,
            created_at=order.created_at,
            items=[
                OrderItemDTO(
                    product_id=i.product_id,
                    variation_id=i.variation_id,
                    name=i.name,
                    unit_price=i.unit_price,
                    quantity=i.quantity,
                )
                for i in order.items
            ],
            client_params=client_params,
        )


class CommissionDTO(DTOBase):
    id: str
    affiliate_id: str
    order_id: str
    order_total: Decimal
    commission_type: str
    commission_rate: Decimal
    commission_amount: Decimal
    currency: str
    status: str
    transfer_id: Optional[str] = None
    transfer_status: str
    transfer_attempt_count: int
    transfer_error: Optional[str] = None
    last_transfer_attempt: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None

    @classmethod
    def from_entity(cls, c: AffiliateCommission) -> "CommissionDTO":
        return cls(
            id=c.id,
            affiliate_id=c.affiliate_id,
            order_id=c.order_id,
            order_total=c.order_total,
            commission_type=c.commission_type.value,
            commission_rate=c.commission_rate,
            commission_amount=c.commission_amount,
            currency=c.currency,
            status=c.status.value,
            transfer_id=c.transfer_id,
            transfer_status=c.transfer_status.value,
            transfer_attempt_count=c.transfer_attempt_count,
            transfer_error=c.transfer_error,
            last_transfer_attempt=c.last_transfer_attempt,
            paid_at=c.paid_at,
            approved_at=c.approved_at,
            notes=c.notes,
        )


class PayoutResult(DTOBase):
    commission_id: str
    outcome: Literal["paid", "failed", "skipped", "already_paid", "transferred_after_cancel"]
    transfer_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class SweepError(DTOBase):
    affiliate_code: str
    error: str


class SweepSummary(DTOBase):
    success: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[SweepError] = Field(default_factory=list)
    commissions_paid: int = 0
    commissions_failed: int = 0

    model_config = ConfigDict(validate_assignment=False)


class WebhookAck(DTOBase):
    received: bool = True
    # processed | duplicate | ignored
    status: str
    event_id: Optional[str] = None
    kind: Optional[str] = None

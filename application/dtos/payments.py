"""
Payment gateway DTOs (Pydantic v2) used at application boundaries.

Every adapter normalizes its provider payloads into these models so the
ledgers never see provider-specific shapes.
"""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.types import condecimal


class WebhookEventKind(str, Enum):
    ORDER_APPROVED = "order_approved"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_REFUNDED = "payment_refunded"
    TRANSFER_CONFIRMED = "transfer_confirmed"
    TRANSFER_REVERSED = "transfer_reversed"
    ACCOUNT_UPDATED = "account_updated"


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class ChargeRequest(BaseModel):
    order_id: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str
    email: Optional[str] = None
    description: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return _validate_currency(v)


class ChargeResult(BaseModel):
    provider: str
    provider_ref: str
    status: str
    # client secret (Stripe), approval link (PayPal) or checkout url (Mercado Pago)
    client_params: Optional[dict[str, Any]] = None


class CaptureResult(BaseModel):
    provider: str
    provider_ref: str
    status: str
    charge_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == "paid"


class TransferRequest(BaseModel):
    amount_minor: int = Field(gt=0)
    currency: str
    destination: str
    idempotency_key: str
    source_charge: Optional[str] = None
    transfer_group: Optional[str] = None
    description: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return _validate_currency(v)


class TransferResult(BaseModel):
    provider: str
    transfer_id: str
    status: str = "processing"


class AccountCapabilities(BaseModel):
    account_ref: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False

    @property
    def payout_enabled(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


class WebhookEvent(BaseModel):
    """Verified, normalized provider notification"""

    id: str
    type: str
    provider: str
    kind: Optional[WebhookEventKind] = None
    order_id: Optional[str] = None
    provider_ref: Optional[str] = None
    charge_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    account_ref: Optional[str] = None
    transfer_ref: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    # raw fields for traceability
    raw_headers: Optional[dict[str, Any]] = None
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def dedup_key(self) -> str:
        return f"{self.provider}:{self.id}"

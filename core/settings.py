"""
Payment and payout settings using pydantic-settings v2 with nested env keys.

Examples: STRIPE__SECRET_KEY, WEBHOOK__DEDUP_BACKEND=redis,
PAYOUT__MAX_TRANSFER_ATTEMPTS=5, PAYOUT__REFUND_POLICY=clawback.
"""
from __future__ import annotations

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 5.0
    write: float = 5.0
    total: float = 10.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks
    dedup_backend: Literal["database", "redis", "memory"] = "database"
    dedup_ttl_seconds: int = 300
    # database backend only; expired markers are deleted on this interval
    purge_interval_seconds: int = 3600


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_version: Optional[str] = None


class PaypalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    base_url: str = "https://api-m.sandbox.paypal.com"


class MercadoPagoSettings(BaseModel):
    access_token: Optional[str] = None
    webhook_secret: Optional[str] = None
    base_url: str = "https://api.mercadopago.com"


class PayoutSettings(BaseModel):
    max_transfer_attempts: int = 5
    transfer_timeout_seconds: float = 30.0
    batch_size: int = 50
    auto_approve: bool = False
    # hold: paid commissions of refunded orders are cancelled and flagged only
    # clawback: paid totals are reversed and a transfer reversal is queued
    refund_policy: Literal["hold", "clawback"] = "hold"
    sweep_interval_seconds: int = 3600
    sweep_lock_timeout_seconds: int = 900


class PaymentSettings(BaseSettings):
    default_provider: str = Field(default="stripe", validation_alias="PAYMENT__DEFAULT_PROVIDER")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PaypalSettings = Field(default_factory=PaypalSettings)
    mercadopago: MercadoPagoSettings = Field(default_factory=MercadoPagoSettings)
    payout: PayoutSettings = Field(default_factory=PayoutSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()

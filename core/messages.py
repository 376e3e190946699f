"""
User-facing message catalog.

Exceptions carry a message_key; the API layer renders it through t() so every
error surface uses the same wording. Unknown keys fall back to the default
text (usually the exception's own message).
"""
from __future__ import annotations

from typing import Optional

from core.logging_config import get_logger


logger = get_logger(__name__)

MESSAGES: dict[str, str] = {
    "welcome": "Storefront reconciliation service",
    "health.ok": "Service is healthy",
    "error.internal": "Internal server error",
    "validation.failed": "Validation failed: {reason}",
    "validation.domain": "Invalid value",
    "auth.unauthorized": "Unauthorized",
    "auth.invalid_credentials": "Invalid credentials",
    "auth.not_configured": "Endpoint is disabled until {secret_name} is configured",
    "rate.limited": "Too many requests, please try again later",
    "order.not_found": "Order not found",
    "order.amount_mismatch": "Paid amount {received} does not match order total {expected}",
    "order.transition.illegal": "Order in status {status} cannot {transition}",
    "coupon.not_redeemable": "Coupon {code} cannot be redeemed: {reason}",
    "affiliate.not_found": "Affiliate not found",
    "commission.not_found": "Commission not found",
    "commission.not_payable": "Commission cannot be paid: {reason}",
    "commission.already_paid": "Commission has already been paid",
    "webhook.provider_unknown": "Unknown payment provider: {provider}",
    "webhook.event_claimed": "Webhook event already processed",
    "sweep.not_configured": "Payout sweep is disabled until {secret_name} is configured",
    "sweep.in_progress": "A payout sweep is already running",
    "payment.provider_error": "Payment provider error",
    "payment.recoverable": "Payment provider temporarily unavailable",
    "payment.signature_invalid": "Webhook signature verification failed",
    "payment.not_configured": "Payment provider is not configured",
}


def t(msgid: str, default: Optional[str] = None, **params) -> str:
    """Render msgid with params; missing keys render the default (or the key)."""
    text = MESSAGES.get(msgid)
    if text is None:
        return default if default is not None else msgid
    if not params:
        return text
    try:
        return text.format(**params)
    except (KeyError, IndexError, ValueError) as exc:
        logger.warning("message_format_failed", msgid=msgid, params=list(params.keys()), error=str(exc))
        return default if default is not None else text

"""
Payment specific codes, provider status mapping and webhook event routing.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    UNSUPPORTED_OPERATION = 60005
    NOT_CONFIGURED = 60006


# Provider→internal charge status mapping
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "pending",
        "requires_confirmation": "pending",
        "requires_action": "pending",
        "processing": "pending",
        "requires_capture": "pending",
        "succeeded": "paid",
        "canceled": "cancelled",
    },
    "paypal": {
        # Per order / capture status
        "CREATED": "pending",
        "SAVED": "pending",
        "APPROVED": "approved",
        "PAYER_ACTION_REQUIRED": "pending",
        "PENDING": "pending",
        "COMPLETED": "paid",
        "DECLINED": "failed",
        "FAILED": "failed",
        "VOIDED": "cancelled",
        "REFUNDED": "refunded",
    },
    "mercadopago": {
        "pending": "pending",
        "in_process": "pending",
        "authorized": "pending",
        "approved": "paid",
        "rejected": "failed",
        "cancelled": "cancelled",
        "refunded": "refunded",
        "charged_back": "refunded",
    },
}


# Provider event type → normalized webhook event kind. Types missing here are
# acknowledged and ignored.
PROVIDER_EVENT_TO_KIND = {
    "stripe": {
        "payment_intent.succeeded": "payment_completed",
        "payment_intent.payment_failed": "payment_failed",
        "payment_intent.canceled": "payment_cancelled",
        "charge.refunded": "payment_refunded",
        "transfer.created": "transfer_confirmed",
        "transfer.reversed": "transfer_reversed",
        "account.updated": "account_updated",
    },
    "paypal": {
        "CHECKOUT.ORDER.APPROVED": "order_approved",
        "CHECKOUT.ORDER.VOIDED": "payment_cancelled",
        "PAYMENT.CAPTURE.COMPLETED": "payment_completed",
        "PAYMENT.CAPTURE.DENIED": "payment_failed",
        "PAYMENT.CAPTURE.DECLINED": "payment_failed",
        "PAYMENT.CAPTURE.REFUNDED": "payment_refunded",
    },
    "mercadopago": {
        "payment.approved": "payment_completed",
        "payment.rejected": "payment_failed",
        "payment.cancelled": "payment_cancelled",
        "payment.refunded": "payment_refunded",
        "payment.charged_back": "payment_refunded",
    },
}


# Transfer failures worth flagging as transient (next sweep will likely succeed)
RETRYABLE_TRANSFER_CODES = {
    "balance_insufficient",
    "rate_limit",
    "lock_timeout",
    "timeout",
    "RATE_LIMIT_REACHED",
    "INSUFFICIENT_FUNDS",
}

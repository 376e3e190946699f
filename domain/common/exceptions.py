"""Business exceptions raised by the domain and consumed by infrastructure/API.

The core layer only maps these to HTTP responses; the domain never imports core.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.codes import BusinessCode
from shared.codes.ledger_codes import LedgerCode


class BusinessException(Exception):
    """Base business exception"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
        format_params: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.message_key = message_key
        self.format_params = format_params
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        message_key: str | None = None,
        format_params: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
            message_key=message_key or "validation.domain",
            format_params=format_params,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: Optional[str] = None, *, provider: Optional[str] = None, provider_ref: Optional[str] = None):
        details = {}
        if order_id:
            details["order_id"] = order_id
        if provider:
            details["provider"] = provider
        if provider_ref:
            details["provider_ref"] = provider_ref
        super().__init__(
            code=LedgerCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details=details or None,
            message_key="order.not_found",
        )


class OrderAmountMismatchException(BusinessException):
    def __init__(self, order_id: str, expected: Decimal, received: Decimal):
        super().__init__(
            code=LedgerCode.ORDER_AMOUNT_MISMATCH,
            message=f"Paid amount {received} does not match order total {expected}",
            error_type="OrderAmountMismatch",
            details={"order_id": order_id, "expected": str(expected), "received": str(received)},
            field="amount",
            message_key="order.amount_mismatch",
        )


class IllegalOrderTransitionException(BusinessException):
    def __init__(self, order_id: Optional[str], status: str, transition: str):
        super().__init__(
            code=LedgerCode.ORDER_TRANSITION_ILLEGAL,
            message=f"Cannot {transition} an order in status {status}",
            error_type="IllegalOrderTransition",
            details={"order_id": order_id, "status": status, "transition": transition},
            field="status",
            message_key="order.transition.illegal",
        )


class CouponNotRedeemableException(BusinessException):
    def __init__(self, code: str, reason: str):
        super().__init__(
            code=LedgerCode.COUPON_NOT_REDEEMABLE,
            message=f"Coupon {code} cannot be redeemed: {reason}",
            error_type="CouponNotRedeemable",
            details={"coupon_code": code, "reason": reason},
            field="coupon_code",
            message_key="coupon.not_redeemable",
        )


class AffiliateNotFoundException(BusinessException):
    def __init__(self, identifier: str):
        super().__init__(
            code=LedgerCode.AFFILIATE_NOT_FOUND,
            message="Affiliate not found",
            error_type="AffiliateNotFound",
            details={"affiliate": identifier},
            message_key="affiliate.not_found",
        )


class CommissionNotFoundException(BusinessException):
    def __init__(self, commission_id: str):
        super().__init__(
            code=LedgerCode.COMMISSION_NOT_FOUND,
            message="Commission not found",
            error_type="CommissionNotFound",
            details={"commission_id": commission_id},
            message_key="commission.not_found",
        )


class CommissionNotPayableException(BusinessException):
    def __init__(self, commission_id: str, reason: str):
        super().__init__(
            code=LedgerCode.COMMISSION_NOT_PAYABLE,
            message=f"Commission cannot be paid out: {reason}",
            error_type="CommissionNotPayable",
            details={"commission_id": commission_id, "reason": reason},
            message_key="commission.not_payable",
        )


class CommissionAlreadyPaidException(BusinessException):
    def __init__(self, commission_id: str):
        super().__init__(
            code=LedgerCode.COMMISSION_ALREADY_PAID,
            message="Commission already paid",
            error_type="CommissionAlreadyPaid",
            details={"commission_id": commission_id},
            message_key="commission.already_paid",
        )


class WebhookEventClaimedException(BusinessException):
    """Another delivery already claimed this event key"""

    def __init__(self, event_key: str):
        super().__init__(
            code=LedgerCode.WEBHOOK_EVENT_CLAIMED,
            message="Webhook event already claimed",
            error_type="WebhookEventClaimed",
            details={"event_key": event_key},
            message_key="webhook.event_claimed",
        )


class UnknownWebhookProviderException(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=LedgerCode.WEBHOOK_PROVIDER_UNKNOWN,
            message=f"Unsupported payment provider: {provider}",
            error_type="UnknownWebhookProvider",
            details={"provider": provider},
            field="provider",
            message_key="webhook.provider_unknown",
            format_params={"provider": provider},
        )


class SweepNotConfiguredException(BusinessException):
    def __init__(self, secret_name: str = "CRON_SECRET"):
        super().__init__(
            code=LedgerCode.SWEEP_NOT_CONFIGURED,
            message=f"{secret_name} is not configured",
            error_type="SweepNotConfigured",
            message_key="sweep.not_configured",
            format_params={"secret_name": secret_name},
        )


class SweepInProgressException(BusinessException):
    def __init__(self):
        super().__init__(
            code=LedgerCode.SWEEP_IN_PROGRESS,
            message="A reconciliation sweep is already running",
            error_type="SweepInProgress",
            message_key="sweep.in_progress",
        )


class AuthenticationFailedException(BusinessException):
    """Missing or wrong shared-secret credential"""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(
            code=BusinessCode.UNAUTHORIZED,
            message=message,
            error_type="AuthenticationFailed",
            message_key="auth.invalid_credentials",
        )


class SecretNotConfiguredException(BusinessException):
    """Endpoint guarded by a shared secret that is not set; fails closed"""

    def __init__(self, secret_name: str):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=f"{secret_name} is not configured",
            error_type="SecretNotConfigured",
            details={"secret_name": secret_name},
            message_key="auth.not_configured",
            format_params={"secret_name": secret_name},
        )

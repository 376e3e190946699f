"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode, RETRYABLE_TRANSFER_CODES


class PaymentProviderError(BusinessException):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        self.provider = provider
        self.provider_code = provider_code
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=full_details,
            message_key="payment.provider_error",
        )

    @property
    def retryable(self) -> bool:
        return (self.provider_code or "") in RETRYABLE_TRANSFER_CODES

    def ledger_message(self) -> str:
        """'<provider> [<code>]: <message>' as stored on commissions"""
        return f"{self.provider} [{self.provider_code or 'unknown'}]: {self.message}"


class PaymentRecoverableError(PaymentProviderError):
    """Transient provider failure (timeouts, rate limits, 5xx)"""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(message, provider=provider, provider_code=provider_code, details=details)
        self.code = PaymentCode.PROVIDER_RECOVERABLE
        self.error_type = "PaymentRecoverableError"
        self.message_key = "payment.recoverable"

    @property
    def retryable(self) -> bool:
        return True


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
            message_key="payment.signature_invalid",
        )


class PaymentNotConfiguredError(BusinessException):
    def __init__(self, setting: str, *, provider: str):
        super().__init__(
            code=PaymentCode.NOT_CONFIGURED,
            message=f"{setting} not configured",
            error_type="PaymentNotConfigured",
            details={"provider": provider, "setting": setting},
            message_key="payment.not_configured",
        )

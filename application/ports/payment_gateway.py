"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    AccountCapabilities,
    CaptureResult,
    ChargeRequest,
    ChargeResult,
    TransferRequest,
    TransferResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Capabilities every provider adapter offers.

    Adapters raise PaymentProviderError / PaymentRecoverableError /
    PaymentSignatureError; they never return provider-specific payloads.
    """

    provider: str
    # True when transfers must reference the settled source charge
    requires_source_charge: bool

    async def create_charge(self, req: ChargeRequest) -> ChargeResult: ...

    async def capture(self, provider_ref: str, *, idempotency_key: Optional[str] = None) -> CaptureResult: ...

    async def get_status(self, provider_ref: str) -> str: ...

    async def resolve_charge_reference(self, provider_ref: str) -> Optional[str]: ...

    async def transfer(self, req: TransferRequest) -> TransferResult: ...

    async def reverse_transfer(self, transfer_id: str, *, amount_minor: Optional[int] = None,
                               idempotency_key: Optional[str] = None) -> str: ...

    async def get_account_capabilities(self, account_ref: str) -> AccountCapabilities: ...

    async def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...

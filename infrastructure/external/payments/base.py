"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement provider-specific logic.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import payment_settings
from application.dtos.payments import (
    AccountCapabilities,
    CaptureResult,
    ChargeRequest,
    ChargeResult,
    TransferRequest,
    TransferResult,
    WebhookEvent,
    WebhookEventKind,
)
from application.ports.payment_gateway import PaymentGateway
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL, PROVIDER_EVENT_TO_KIND


logger = get_logger(__name__)


class BasePaymentClient(PaymentGateway):
    provider: str = "base"
    requires_source_charge: bool = False

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or payment_settings.timeouts.model_dump()
        self._retry_cfg = retry or {"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff}
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts)
        try:
            yield self._client
        finally:
            # kept open for reuse; aclose() closes it
            ...

    async def aclose(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any], *, retry_transport: bool = True):
        """Run fn, retrying httpx transport errors with exponential backoff.

        retry_transport=False makes a single attempt; used for money movement
        that carries no provider-side idempotency key.
        """
        attempts = int(self._retry_cfg["max"]) + 1 if retry_transport else 1
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
                retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    return await fn()
        except httpx.TimeoutException as exc:
            raise PaymentRecoverableError(str(exc) or "request timed out", provider=self.provider,
                                          provider_code="timeout") from exc
        except httpx.TransportError as exc:
            raise PaymentRecoverableError(str(exc) or "transport error", provider=self.provider,
                                          provider_code="transport_error") from exc

    async def _run_sync(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking SDK call in a worker thread, bounded by the total timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeouts_cfg["total"],
            )
        except asyncio.TimeoutError as exc:
            raise PaymentRecoverableError("provider call timed out", provider=self.provider,
                                          provider_code="timeout") from exc

    def _raise_for_response(self, resp: httpx.Response, operation: str) -> None:
        if resp.status_code < 400:
            return
        try:
            body = resp.json()
        except ValueError:
            body = {"message": resp.text[:500]}
        code = str(body.get("name") or body.get("error") or body.get("code") or resp.status_code)
        message = str(body.get("message") or body.get("error_description") or f"{operation} failed")
        logger.warning(
            "payment_provider_http_error",
            provider=self.provider,
            operation=operation,
            status_code=resp.status_code,
            provider_code=code,
        )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise PaymentRecoverableError(message, provider=self.provider, provider_code=code)
        raise PaymentProviderError(message, provider=self.provider, provider_code=code)

    def _unsupported(self, operation: str) -> PaymentProviderError:
        return PaymentProviderError(
            f"{operation} is not supported by {self.provider}",
            provider=self.provider,
            provider_code="unsupported_operation",
        )

    # Default implementations raise so adapters only override what they offer
    async def create_charge(self, req: ChargeRequest) -> ChargeResult:  # type: ignore[override]
        raise self._unsupported("create_charge")

    async def capture(self, provider_ref: str, *, idempotency_key: Optional[str] = None) -> CaptureResult:  # type: ignore[override]
        raise self._unsupported("capture")

    async def get_status(self, provider_ref: str) -> str:  # type: ignore[override]
        raise self._unsupported("get_status")

    async def resolve_charge_reference(self, provider_ref: str) -> Optional[str]:  # type: ignore[override]
        return None

    async def transfer(self, req: TransferRequest) -> TransferResult:  # type: ignore[override]
        raise self._unsupported("transfer")

    async def reverse_transfer(self, transfer_id: str, *, amount_minor: Optional[int] = None,
                               idempotency_key: Optional[str] = None) -> str:  # type: ignore[override]
        raise self._unsupported("reverse_transfer")

    async def get_account_capabilities(self, account_ref: str) -> AccountCapabilities:  # type: ignore[override]
        raise self._unsupported("get_account_capabilities")

    async def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    def _map_status(self, provider_status: str) -> str:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status, provider_status)

    def _classify(self, event_type: str) -> Optional[WebhookEventKind]:
        kind = PROVIDER_EVENT_TO_KIND.get(self.provider, {}).get(event_type)
        return WebhookEventKind(kind) if kind else None

    @staticmethod
    def _header(headers: dict[str, Any], name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in headers.items():
            if key.lower() == lowered:
                return value
        return None

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )

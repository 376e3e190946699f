"""
Mercado Pago adapter over the REST API (httpx).

Notifications only carry a payment id, so the adapter verifies the
`x-signature` HMAC and then fetches the payment to learn its status. The
normalized event type is `payment.<status>`. Marketplace payouts are not
offered by this provider integration.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import re
from decimal import Decimal
from typing import Any, Optional

from application.dtos.payments import (
    ChargeRequest,
    ChargeResult,
    TransferRequest,
    TransferResult,
    WebhookEvent,
)
from domain.common.money import to_money
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentNotConfiguredError,
    PaymentProviderError,
    PaymentSignatureError,
)
from core.settings import payment_settings


_RESOURCE_PAYMENT_ID = re.compile(r"/payments/(\d+)")


def signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def parse_signature_header(value: str) -> dict[str, str]:
    parts: dict[str, str] = {}
    for chunk in value.split(","):
        key, _, val = chunk.partition("=")
        if key.strip() and val:
            parts[key.strip()] = val.strip()
    return parts


class MercadoPagoClient(BasePaymentClient):
    provider = "mercadopago"
    requires_source_charge = False

    def __init__(self):
        super().__init__()
        cfg = payment_settings.mercadopago
        if not cfg.access_token:
            raise PaymentNotConfiguredError("MERCADOPAGO__ACCESS_TOKEN", provider=self.provider)
        self._base_url = cfg.base_url.rstrip("/")
        self._access_token = cfg.access_token
        self._webhook_secret = cfg.webhook_secret

    async def _request(self, method: str, path: str, operation: str, *,
                       json_body: Optional[dict] = None, idempotency_key: Optional[str] = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        async def _do():
            async with self.client() as c:
                return await c.request(method, f"{self._base_url}{path}", json=json_body, headers=headers)

        resp = await self._retry(_do)
        self._raise_for_response(resp, operation)
        return resp.json() if resp.content else {}

    async def create_charge(self, req: ChargeRequest) -> ChargeResult:  # type: ignore[override]
        body: dict[str, Any] = {
            "external_reference": req.order_id,
            "items": [{
                "id": req.order_id,
                "title": req.description or f"Order {req.order_id}",
                "quantity": 1,
                "currency_id": req.currency,
                "unit_price": float(to_money(req.amount)),
            }],
            "metadata": {"order_id": req.order_id, **(req.metadata or {})},
        }
        if req.email:
            body["payer"] = {"email": req.email}
        if req.return_url:
            body["back_urls"] = {"success": req.return_url, "failure": req.cancel_url or req.return_url}
        pref = await self._request("POST", "/checkout/preferences", "create_charge",
                                   json_body=body, idempotency_key=req.idempotency_key)
        self._log("mercadopago_preference_created", order_id=req.order_id, provider_ref=pref.get("id"))
        return ChargeResult(
            provider=self.provider,
            provider_ref=str(pref["id"]),
            status="pending",
            client_params={"init_point": pref.get("init_point")},
        )

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/payments/{payment_id}", "get_payment")

    async def get_status(self, provider_ref: str) -> str:  # type: ignore[override]
        payment = await self.get_payment(provider_ref)
        return self._map_status(payment.get("status", ""))

    async def resolve_charge_reference(self, provider_ref: str) -> Optional[str]:  # type: ignore[override]
        return provider_ref

    async def transfer(self, req: TransferRequest) -> TransferResult:  # type: ignore[override]
        raise PaymentProviderError(
            "Mercado Pago payouts are not supported",
            provider=self.provider,
            provider_code="unsupported_operation",
        )

    def _verify_signature(self, headers: dict[str, Any], data_id: str) -> None:
        if not self._webhook_secret:
            raise PaymentSignatureError("Missing MERCADOPAGO__WEBHOOK_SECRET", provider=self.provider)
        signature = self._header(headers, "x-signature")
        request_id = self._header(headers, "x-request-id")
        if not signature or not request_id:
            raise PaymentSignatureError("Missing x-signature or x-request-id header", provider=self.provider)
        parts = parse_signature_header(signature)
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            raise PaymentSignatureError("Malformed x-signature header", provider=self.provider)
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            signature_manifest(data_id, request_id, ts).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        if not hmac.compare_digest(expected, received):
            raise PaymentSignatureError("Invalid x-signature", provider=self.provider)

    @staticmethod
    def _payment_id(payload: dict[str, Any]) -> Optional[str]:
        data = payload.get("data") or {}
        if data.get("id"):
            return str(data["id"])
        resource = payload.get("resource")
        if isinstance(resource, str):
            match = _RESOURCE_PAYMENT_ID.search(resource)
            if match:
                return match.group(1)
        return None

    async def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise PaymentSignatureError("Malformed webhook body", provider=self.provider) from exc

        payment_id = self._payment_id(payload)
        if not payment_id:
            raise PaymentSignatureError("Notification carries no payment id", provider=self.provider)
        self._verify_signature(headers, payment_id)

        payment = await self.get_payment(payment_id)
        status = str(payment.get("status") or "unknown")
        event_type = f"payment.{status}"
        amount = payment.get("transaction_amount")
        # one notification per payment status change
        event_id = f"{payment_id}:{status}"
        return WebhookEvent(
            id=event_id,
            type=event_type,
            provider=self.provider,
            kind=self._classify(event_type),
            order_id=payment.get("external_reference") or (payment.get("metadata") or {}).get("order_id"),
            provider_ref=payment_id,
            charge_ref=payment_id,
            amount=Decimal(str(amount)) if amount is not None and status == "approved" else None,
            currency=payment.get("currency_id"),
            data=payment,
            raw_headers=headers,
            raw_body=body,
        )

"""
PayPal adapter over the REST API (httpx).

Orders v2 for checkout/capture, Payouts v1 for affiliate transfers and the
verify-webhook-signature API for webhook authenticity. Our order id travels
in `custom_id`; the PayPal order id is the provider reference.
"""
from __future__ import annotations

import json
import time
from decimal import Decimal
from typing import Any, Optional

from application.dtos.payments import (
    CaptureResult,
    ChargeRequest,
    ChargeResult,
    TransferRequest,
    TransferResult,
    WebhookEvent,
)
from domain.common.money import from_minor_units, to_money
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentNotConfiguredError,
    PaymentProviderError,
    PaymentSignatureError,
)
from core.settings import payment_settings


_TRANSMISSION_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
)


class PaypalClient(BasePaymentClient):
    provider = "paypal"
    requires_source_charge = False

    def __init__(self):
        super().__init__()
        cfg = payment_settings.paypal
        if not cfg.client_id or not cfg.client_secret:
            raise PaymentNotConfiguredError("PAYPAL__CLIENT_ID/PAYPAL__CLIENT_SECRET", provider=self.provider)
        self._base_url = cfg.base_url.rstrip("/")
        self._client_id = cfg.client_id
        self._client_secret = cfg.client_secret
        self._webhook_id = cfg.webhook_id
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        async def _do():
            async with self.client() as c:
                return await c.post(
                    f"{self._base_url}/v1/oauth2/token",
                    auth=(self._client_id, self._client_secret),
                    data={"grant_type": "client_credentials"},
                )

        resp = await self._retry(_do)
        self._raise_for_response(resp, "oauth_token")
        data = resp.json()
        self._token = data["access_token"]
        # refresh one minute early
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 300)) - 60, 30)
        return self._token

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json_body: Optional[dict] = None,
        request_id: Optional[str] = None,
        retry_transport: bool = True,
    ) -> dict[str, Any]:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        async def _do():
            async with self.client() as c:
                return await c.request(method, f"{self._base_url}{path}", json=json_body, headers=headers)

        resp = await self._retry(_do, retry_transport=retry_transport)
        self._raise_for_response(resp, operation)
        return resp.json() if resp.content else {}

    @staticmethod
    def _capture_from_order(order: dict[str, Any]) -> dict[str, Any]:
        for unit in order.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return {}

    async def create_charge(self, req: ChargeRequest) -> ChargeResult:  # type: ignore[override]
        body: dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": req.order_id,
                "custom_id": req.order_id,
                "description": req.description or f"Order {req.order_id}",
                "amount": {"currency_code": req.currency, "value": f"{to_money(req.amount):.2f}"},
            }],
        }
        if req.return_url or req.cancel_url:
            body["application_context"] = {
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": req.return_url,
                "cancel_url": req.cancel_url,
            }
        order = await self._request("POST", "/v2/checkout/orders", "create_charge",
                                    json_body=body, request_id=req.idempotency_key)
        approve = next((link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")), None)
        self._log("paypal_order_created", order_id=req.order_id, provider_ref=order.get("id"))
        return ChargeResult(
            provider=self.provider,
            provider_ref=str(order["id"]),
            status=self._map_status(order.get("status", "CREATED")),
            client_params={"approve_url": approve},
        )

    async def capture(self, provider_ref: str, *, idempotency_key: Optional[str] = None) -> CaptureResult:  # type: ignore[override]
        order = await self._request(
            "POST", f"/v2/checkout/orders/{provider_ref}/capture", "capture",
            request_id=idempotency_key or f"capture_{provider_ref}",
        )
        capture = self._capture_from_order(order)
        amount = capture.get("amount") or {}
        status = capture.get("status") or order.get("status", "")
        self._log("paypal_order_captured", provider_ref=provider_ref, status=status)
        return CaptureResult(
            provider=self.provider,
            provider_ref=provider_ref,
            status=self._map_status(status),
            charge_ref=capture.get("id"),
            amount=Decimal(amount["value"]) if amount.get("value") else None,
            currency=amount.get("currency_code"),
        )

    async def get_status(self, provider_ref: str) -> str:  # type: ignore[override]
        order = await self._request("GET", f"/v2/checkout/orders/{provider_ref}", "get_status")
        return self._map_status(order.get("status", ""))

    async def resolve_charge_reference(self, provider_ref: str) -> Optional[str]:  # type: ignore[override]
        order = await self._request("GET", f"/v2/checkout/orders/{provider_ref}", "resolve_charge_reference")
        return self._capture_from_order(order).get("id")

    async def transfer(self, req: TransferRequest) -> TransferResult:  # type: ignore[override]
        amount = from_minor_units(req.amount_minor, req.currency)
        body = {
            "sender_batch_header": {
                "sender_batch_id": req.idempotency_key,
                "email_subject": "You have a commission payout",
            },
            "items": [{
                "recipient_type": "EMAIL" if "@" in req.destination else "PAYPAL_ID",
                "receiver": req.destination,
                "amount": {"value": f"{amount:.2f}", "currency": req.currency},
                "sender_item_id": req.metadata.get("commission_id", req.idempotency_key),
                "note": req.description or "Affiliate commission",
            }],
        }
        # sender_batch_id makes the call idempotent, so transport retries are safe
        result = await self._request("POST", "/v1/payments/payouts", "transfer",
                                     json_body=body, request_id=req.idempotency_key)
        batch = result.get("batch_header") or {}
        batch_id = batch.get("payout_batch_id")
        if not batch_id:
            raise PaymentProviderError("Payout batch id missing", provider=self.provider,
                                       provider_code="malformed_response")
        self._log("paypal_payout_created", transfer_id=batch_id, status=batch.get("batch_status"))
        return TransferResult(provider=self.provider, transfer_id=str(batch_id), status="processing")

    async def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        if not self._webhook_id:
            raise PaymentSignatureError("Missing PAYPAL__WEBHOOK_ID", provider=self.provider)
        transmission = {name: self._header(headers, name) for name in _TRANSMISSION_HEADERS}
        missing = [name for name, value in transmission.items() if not value]
        if missing:
            raise PaymentSignatureError("Missing PayPal transmission headers", provider=self.provider,
                                        details={"missing": missing})
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise PaymentSignatureError("Malformed webhook body", provider=self.provider) from exc

        verification = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            "verify_webhook",
            json_body={
                "auth_algo": transmission["paypal-auth-algo"],
                "cert_url": transmission["paypal-cert-url"],
                "transmission_id": transmission["paypal-transmission-id"],
                "transmission_sig": transmission["paypal-transmission-sig"],
                "transmission_time": transmission["paypal-transmission-time"],
                "webhook_id": self._webhook_id,
                "webhook_event": payload,
            },
        )
        if verification.get("verification_status") != "SUCCESS":
            raise PaymentSignatureError("PayPal webhook verification failed", provider=self.provider)
        return self._normalize(payload, headers, body)

    def _normalize(self, payload: dict[str, Any], headers: dict[str, Any], body: bytes) -> WebhookEvent:
        event_type = str(payload.get("event_type") or "")
        resource = payload.get("resource") or {}
        fields: dict[str, Any] = {}

        if event_type.startswith("CHECKOUT.ORDER."):
            units = resource.get("purchase_units") or [{}]
            fields["provider_ref"] = resource.get("id")
            fields["order_id"] = units[0].get("custom_id")
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            fields["provider_ref"] = related.get("order_id")
            fields["order_id"] = resource.get("custom_id")
            fields["charge_ref"] = resource.get("id")
            amount = resource.get("amount") or {}
            if event_type == "PAYMENT.CAPTURE.COMPLETED" and amount.get("value"):
                fields["amount"] = Decimal(amount["value"])
                fields["currency"] = amount.get("currency_code")

        return WebhookEvent(
            id=str(payload.get("id")),
            type=event_type,
            provider=self.provider,
            kind=self._classify(event_type),
            data=resource,
            raw_headers=headers,
            raw_body=body,
            **fields,
        )

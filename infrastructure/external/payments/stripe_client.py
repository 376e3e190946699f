"""
Stripe adapter using the official stripe-python SDK.

- PaymentIntents for charges, Connect transfers for payouts.
- Idempotency keys are passed with the `idempotency_key` kwarg.
- Webhooks are verified with `stripe.Webhook.construct_event` against the
  `Stripe-Signature` header; the verified JSON body is then normalized.
- SDK calls are blocking and run in a worker thread with a timeout.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import stripe

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
from domain.common.money import from_minor_units, to_minor_units
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentNotConfiguredError,
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from core.settings import payment_settings
from core.logging_config import get_logger


logger = get_logger(__name__)

_RECOVERABLE_CODES = {"rate_limit", "lock_timeout", "balance_insufficient"}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class StripeClient(BasePaymentClient):
    provider = "stripe"
    requires_source_charge = True

    def __init__(self):
        super().__init__()
        if not payment_settings.stripe.secret_key:
            raise PaymentNotConfiguredError("STRIPE__SECRET_KEY", provider=self.provider)
        stripe.api_key = payment_settings.stripe.secret_key
        if payment_settings.stripe.api_version:
            stripe.api_version = payment_settings.stripe.api_version

    def _translate(self, exc: Exception, operation: str) -> PaymentProviderError:
        code = _field(exc, "code") or exc.__class__.__name__
        message = _field(exc, "user_message") or str(exc) or f"{operation} failed"
        logger.warning("stripe_call_failed", operation=operation, provider_code=code, error=message)
        if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError)) or code in _RECOVERABLE_CODES:
            return PaymentRecoverableError(message, provider=self.provider, provider_code=str(code))
        return PaymentProviderError(message, provider=self.provider, provider_code=str(code))

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return await self._run_sync(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            raise self._translate(exc, operation) from exc

    async def create_charge(self, req: ChargeRequest) -> ChargeResult:  # type: ignore[override]
        metadata = dict(req.metadata or {})
        metadata.setdefault("order_id", req.order_id)
        pi = await self._call(
            "create_charge",
            stripe.PaymentIntent.create,
            amount=to_minor_units(req.amount, req.currency),
            currency=req.currency.lower(),
            metadata=metadata,
            receipt_email=req.email,
            description=req.description,
            automatic_payment_methods={"enabled": True},
            idempotency_key=req.idempotency_key,
        )
        self._log("stripe_charge_created", order_id=req.order_id, provider_ref=pi.id)
        return ChargeResult(
            provider=self.provider,
            provider_ref=str(pi.id),
            status=self._map_status(pi.status),
            client_params={"client_secret": _field(pi, "client_secret")},
        )

    async def capture(self, provider_ref: str, *, idempotency_key: Optional[str] = None) -> CaptureResult:  # type: ignore[override]
        # Automatic capture: report the intent as it stands
        pi = await self._call("capture", stripe.PaymentIntent.retrieve, provider_ref)
        return CaptureResult(
            provider=self.provider,
            provider_ref=provider_ref,
            status=self._map_status(pi.status),
            charge_ref=_field(pi, "latest_charge"),
            amount=from_minor_units(_field(pi, "amount_received") or 0, pi.currency),
            currency=str(pi.currency).upper(),
        )

    async def get_status(self, provider_ref: str) -> str:  # type: ignore[override]
        pi = await self._call("get_status", stripe.PaymentIntent.retrieve, provider_ref)
        return self._map_status(pi.status)

    async def resolve_charge_reference(self, provider_ref: str) -> Optional[str]:  # type: ignore[override]
        if provider_ref.startswith("ch_") or provider_ref.startswith("py_"):
            return provider_ref
        pi = await self._call("resolve_charge_reference", stripe.PaymentIntent.retrieve, provider_ref)
        charge = _field(pi, "latest_charge")
        if charge is None or isinstance(charge, str):
            return charge
        # expanded charge object
        return _field(charge, "id")

    async def transfer(self, req: TransferRequest) -> TransferResult:  # type: ignore[override]
        params: dict[str, Any] = {
            "amount": req.amount_minor,
            "currency": req.currency.lower(),
            "destination": req.destination,
            "metadata": req.metadata,
            "idempotency_key": req.idempotency_key,
        }
        if req.source_charge:
            params["source_transaction"] = req.source_charge
        if req.transfer_group:
            params["transfer_group"] = req.transfer_group
        if req.description:
            params["description"] = req.description
        tr = await self._call("transfer", stripe.Transfer.create, **params)
        self._log("stripe_transfer_created", transfer_id=tr.id, destination=req.destination,
                  amount_minor=req.amount_minor)
        return TransferResult(provider=self.provider, transfer_id=str(tr.id), status="processing")

    async def reverse_transfer(self, transfer_id: str, *, amount_minor: Optional[int] = None,
                               idempotency_key: Optional[str] = None) -> str:  # type: ignore[override]
        params: dict[str, Any] = {"idempotency_key": idempotency_key}
        if amount_minor:
            params["amount"] = amount_minor
        rev = await self._call("reverse_transfer", stripe.Transfer.create_reversal, transfer_id, **params)
        self._log("stripe_transfer_reversed", transfer_id=transfer_id, reversal_id=rev.id)
        return str(rev.id)

    async def get_account_capabilities(self, account_ref: str) -> AccountCapabilities:  # type: ignore[override]
        acct = await self._call("get_account_capabilities", stripe.Account.retrieve, account_ref)
        return AccountCapabilities(
            account_ref=account_ref,
            charges_enabled=bool(_field(acct, "charges_enabled", False)),
            payouts_enabled=bool(_field(acct, "payouts_enabled", False)),
            details_submitted=bool(_field(acct, "details_submitted", False)),
        )

    async def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        secret = payment_settings.stripe.webhook_secret
        if not secret:
            raise PaymentSignatureError("Missing STRIPE__WEBHOOK_SECRET", provider=self.provider)
        sig = self._header(headers, "Stripe-Signature")
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider)
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=secret,
                tolerance=payment_settings.webhook.tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, ValueError) as exc:
            raise PaymentSignatureError(str(exc), provider=self.provider) from exc

        payload = json.loads(body)
        return self._normalize(payload, headers, body)

    def _normalize(self, payload: dict[str, Any], headers: dict[str, Any], body: bytes) -> WebhookEvent:
        event_type = str(payload.get("type") or "")
        obj = (payload.get("data") or {}).get("object") or {}
        kind = self._classify(event_type)
        metadata = obj.get("metadata") or {}
        fields: dict[str, Any] = {"order_id": metadata.get("order_id")}

        if event_type.startswith("payment_intent."):
            fields["provider_ref"] = obj.get("id")
            fields["charge_ref"] = obj.get("latest_charge")
            if kind is WebhookEventKind.PAYMENT_COMPLETED and obj.get("currency"):
                received = obj.get("amount_received") or obj.get("amount")
                if received is not None:
                    fields["amount"] = from_minor_units(int(received), obj["currency"])
                fields["currency"] = str(obj["currency"]).upper()
        elif event_type.startswith("charge."):
            fields["provider_ref"] = obj.get("payment_intent")
            fields["charge_ref"] = obj.get("id")
        elif event_type.startswith("transfer."):
            fields["transfer_ref"] = obj.get("id")
            fields["account_ref"] = obj.get("destination")
        elif event_type == "account.updated":
            fields["account_ref"] = obj.get("id")

        return WebhookEvent(
            id=str(payload.get("id")),
            type=event_type,
            provider=self.provider,
            kind=kind,
            data=obj,
            raw_headers=headers,
            raw_body=body,
            **fields,
        )

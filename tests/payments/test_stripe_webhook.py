import json
from decimal import Decimal

import pytest


stripe = pytest.importorskip("stripe")


def _body(event_type="payment_intent.succeeded", obj=None):
    return json.dumps({
        "id": "evt_1",
        "type": event_type,
        "data": {"object": obj or {
            "id": "pi_1",
            "status": "succeeded",
            "amount_received": 2000,
            "currency": "usd",
            "latest_charge": "ch_1",
            "metadata": {"order_id": "order-1"},
        }},
    }).encode()


@pytest.mark.asyncio
async def test_stripe_parse_webhook(monkeypatch):
    from infrastructure.external.payments import get_payment_gateway
    from infrastructure.external.payments.stripe_client import StripeClient
    from application.dtos.payments import WebhookEventKind

    # Fake construct_event to bypass cryptography
    class _FakeWebhook:
        @staticmethod
        def construct_event(payload, sig_header, secret, tolerance=None):
            return json.loads(payload)

    monkeypatch.setattr(stripe, "Webhook", _FakeWebhook)

    gw = get_payment_gateway("stripe")
    assert isinstance(gw, StripeClient)
    evt = await gw.parse_webhook({"Stripe-Signature": "t=1,v1=abc"}, _body())
    assert evt.type == "payment_intent.succeeded"
    assert evt.provider == "stripe"
    assert evt.kind is WebhookEventKind.PAYMENT_COMPLETED
    assert evt.order_id == "order-1"
    assert evt.provider_ref == "pi_1"
    assert evt.charge_ref == "ch_1"
    assert evt.amount == Decimal("20.00")
    assert evt.currency == "USD"
    assert evt.dedup_key == "stripe:evt_1"


@pytest.mark.asyncio
async def test_stripe_transfer_and_account_events(monkeypatch):
    from infrastructure.external.payments.stripe_client import StripeClient
    from application.dtos.payments import WebhookEventKind

    class _FakeWebhook:
        @staticmethod
        def construct_event(payload, sig_header, secret, tolerance=None):
            return json.loads(payload)

    monkeypatch.setattr(stripe, "Webhook", _FakeWebhook)
    gw = StripeClient()

    transfer = await gw.parse_webhook(
        {"stripe-signature": "t=1,v1=abc"},
        _body("transfer.reversed", {"id": "tr_1", "destination": "acct_1"}),
    )
    assert transfer.kind is WebhookEventKind.TRANSFER_REVERSED
    assert transfer.transfer_ref == "tr_1"

    account = await gw.parse_webhook(
        {"Stripe-Signature": "t=1,v1=abc"},
        _body("account.updated", {"id": "acct_1", "charges_enabled": True, "payouts_enabled": False}),
    )
    assert account.kind is WebhookEventKind.ACCOUNT_UPDATED
    assert account.account_ref == "acct_1"
    assert account.data["payouts_enabled"] is False

    ignored = await gw.parse_webhook({"Stripe-Signature": "t=1,v1=abc"}, _body("customer.created", {"id": "cus_1"}))
    assert ignored.kind is None


@pytest.mark.asyncio
async def test_stripe_rejects_bad_signature(monkeypatch):
    from infrastructure.external.payments.stripe_client import StripeClient
    from infrastructure.external.payments.exceptions import PaymentSignatureError

    class _RejectingWebhook:
        @staticmethod
        def construct_event(payload, sig_header, secret, tolerance=None):
            raise stripe.SignatureVerificationError("No signatures found", sig_header)

    monkeypatch.setattr(stripe, "Webhook", _RejectingWebhook)
    gw = StripeClient()

    with pytest.raises(PaymentSignatureError):
        await gw.parse_webhook({"Stripe-Signature": "t=1,v1=forged"}, _body())
    with pytest.raises(PaymentSignatureError):
        await gw.parse_webhook({}, _body())

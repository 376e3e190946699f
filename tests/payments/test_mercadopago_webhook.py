import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from application.dtos.payments import WebhookEventKind
from infrastructure.external.payments.exceptions import PaymentSignatureError
from infrastructure.external.payments.mercadopago_client import MercadoPagoClient, signature_manifest

SECRET = "mp-webhook-secret"


def _signed_headers(payment_id: str, request_id: str = "req-1", ts: str = "1700000000", secret: str = SECRET):
    v1 = hmac.new(secret.encode(), signature_manifest(payment_id, request_id, ts).encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={v1}", "x-request-id": request_id}


@pytest.fixture
def client(monkeypatch):
    c = MercadoPagoClient()
    c._webhook_secret = SECRET
    fetched = []

    async def get_payment(payment_id):
        fetched.append(payment_id)
        return {
            "id": int(payment_id),
            "status": "approved",
            "transaction_amount": 90.0,
            "currency_id": "BRL",
            "external_reference": "order-7",
        }

    monkeypatch.setattr(c, "get_payment", get_payment)
    c.fetched = fetched
    return c


@pytest.mark.asyncio
async def test_signed_notification_is_normalized(client):
    body = json.dumps({"type": "payment", "data": {"id": "123"}}).encode()

    evt = await client.parse_webhook(_signed_headers("123"), body)

    assert client.fetched == ["123"]
    assert evt.id == "123:approved"
    assert evt.type == "payment.approved"
    assert evt.kind is WebhookEventKind.PAYMENT_COMPLETED
    assert evt.order_id == "order-7"
    assert evt.provider_ref == "123"
    assert evt.amount == Decimal("90.00")


@pytest.mark.asyncio
async def test_payment_id_from_resource_url(client):
    body = json.dumps({"topic": "payment", "resource": "https://api.mercadopago.com/v1/payments/456"}).encode()
    evt = await client.parse_webhook(_signed_headers("456"), body)
    assert evt.provider_ref == "456"


@pytest.mark.asyncio
async def test_forged_signature_is_rejected(client):
    body = json.dumps({"data": {"id": "123"}}).encode()
    with pytest.raises(PaymentSignatureError):
        await client.parse_webhook(_signed_headers("123", secret="wrong"), body)
    with pytest.raises(PaymentSignatureError):
        await client.parse_webhook({"x-request-id": "req-1"}, body)
    assert client.fetched == []


@pytest.mark.asyncio
async def test_transfers_are_unsupported(client):
    from application.dtos.payments import TransferRequest
    from infrastructure.external.payments.exceptions import PaymentProviderError

    with pytest.raises(PaymentProviderError):
        await client.transfer(TransferRequest(amount_minor=100, currency="BRL", destination="x", idempotency_key="k"))

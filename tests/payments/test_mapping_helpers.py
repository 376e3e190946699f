from decimal import Decimal

from application.dtos.payments import WebhookEventKind
from domain.common.money import from_minor_units, to_minor_units
from infrastructure.external.payments.base import BasePaymentClient


class _MapClient(BasePaymentClient):
    provider = "stripe"


def test_provider_status_mapping():
    c = _MapClient()
    assert c._map_status("succeeded") == "paid"
    assert c._map_status("processing") == "pending"
    assert c._map_status("requires_action") == "pending"
    assert c._map_status("something_new") == "something_new"


def test_event_classification():
    c = _MapClient()
    assert c._classify("charge.refunded") is WebhookEventKind.PAYMENT_REFUNDED
    assert c._classify("transfer.created") is WebhookEventKind.TRANSFER_CONFIRMED
    assert c._classify("customer.created") is None


def test_header_lookup_is_case_insensitive():
    assert BasePaymentClient._header({"Stripe-Signature": "v"}, "stripe-signature") == "v"
    assert BasePaymentClient._header({}, "stripe-signature") is None


def test_minor_units():
    assert to_minor_units(Decimal("20.00"), "USD") == 2000
    assert to_minor_units(Decimal("0.005"), "USD") == 1
    assert to_minor_units(Decimal("1500"), "jpy") == 1500
    assert from_minor_units(1999, "usd") == Decimal("19.99")

from decimal import Decimal

import pytest

from application.dtos.payments import WebhookEvent, WebhookEventKind
from application.services.commission_service import CommissionApplicationService
from application.services.order_ledger_service import OrderLedgerApplicationService
from application.services.webhook_service import WebhookDispatcher
from domain.common.exceptions import OrderAmountMismatchException, UnknownWebhookProviderException
from infrastructure.external.payments.exceptions import PaymentSignatureError
from infrastructure.idempotency import DatabaseIdempotencyGuard, InMemoryIdempotencyGuard


@pytest.fixture
def guard():
    return InMemoryIdempotencyGuard(ttl_seconds=300)


@pytest.fixture
def webhooks(uow_factory, gateway_resolver, guard):
    orders = OrderLedgerApplicationService(uow_factory, gateway_resolver)
    commissions = CommissionApplicationService(uow_factory, gateway_resolver)
    return WebhookDispatcher(gateway_resolver, guard, orders, commissions)


def _paid_event(order, event_id="evt_1", amount="100.00"):
    return WebhookEvent(
        id=event_id,
        type="payment_intent.succeeded",
        provider="stripe",
        kind=WebhookEventKind.PAYMENT_COMPLETED,
        provider_ref=order.provider_ref,
        amount=Decimal(amount),
    )


async def _commission_count(uow_factory, order_id):
    async with uow_factory(readonly=True) as uow:
        return len(await uow.commission_repository.list_by_order(order_id))


@pytest.mark.asyncio
async def test_event_is_processed_once(webhooks, gateway, uow_factory, seed):
    affiliate = await seed.affiliate()
    order = await seed.order(affiliate_id=affiliate.id)
    gateway.webhook_events = [_paid_event(order), _paid_event(order)]

    first = await webhooks.dispatch("stripe", {"Stripe-Signature": "t=1,v1=x"}, b"{}")
    second = await webhooks.dispatch("stripe", {"Stripe-Signature": "t=1,v1=x"}, b"{}")

    assert first.status == "processed"
    assert first.kind == "payment_completed"
    assert second.status == "duplicate"
    assert await _commission_count(uow_factory, order.id) == 1


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected(webhooks):
    with pytest.raises(UnknownWebhookProviderException):
        await webhooks.dispatch("bitpay", {}, b"{}")


@pytest.mark.asyncio
async def test_invalid_signature_changes_nothing(webhooks, gateway, guard):
    gateway.webhook_error = PaymentSignatureError("bad signature", provider="stripe")
    with pytest.raises(PaymentSignatureError):
        await webhooks.dispatch("stripe", {}, b"{}")
    assert await guard.seen("stripe:evt_1") is False


@pytest.mark.asyncio
async def test_unrouted_event_type_is_acknowledged(webhooks, gateway):
    gateway.webhook_events = [WebhookEvent(id="evt_9", type="customer.created", provider="stripe")]
    ack = await webhooks.dispatch("stripe", {}, b"{}")
    assert ack.status == "ignored"
    assert ack.received is True


@pytest.mark.asyncio
async def test_failed_handler_releases_event_for_redelivery(webhooks, gateway, guard, uow_factory, seed):
    order = await seed.order()
    gateway.webhook_events = [_paid_event(order, amount="1.00"), _paid_event(order)]

    with pytest.raises(OrderAmountMismatchException):
        await webhooks.dispatch("stripe", {}, b"{}")
    assert await guard.seen("stripe:evt_1") is False

    ack = await webhooks.dispatch("stripe", {}, b"{}")
    assert ack.status == "processed"


@pytest.mark.asyncio
async def test_same_id_from_two_providers_is_not_a_duplicate(guard):
    assert await guard.claim("stripe:evt_1") is True
    assert await guard.claim("paypal:evt_1") is True
    assert await guard.claim("stripe:evt_1") is False


def test_every_kind_has_a_handler(webhooks):
    for kind in WebhookEventKind:
        assert webhooks.handler_for(kind) is not None


@pytest.mark.asyncio
async def test_memory_guard_forgets_after_ttl():
    now = [1000.0]
    guard = InMemoryIdempotencyGuard(ttl_seconds=300, clock=lambda: now[0])
    assert await guard.claim("stripe:evt_1") is True
    now[0] += 299
    assert await guard.seen("stripe:evt_1") is True
    now[0] += 2
    assert await guard.seen("stripe:evt_1") is False
    assert await guard.claim("stripe:evt_1") is True


@pytest.mark.asyncio
async def test_database_guard_claims_once(uow_factory):
    guard = DatabaseIdempotencyGuard(uow_factory, ttl_seconds=300)
    assert await guard.claim("stripe:evt_1") is True
    assert await guard.claim("stripe:evt_1") is False
    assert await guard.seen("stripe:evt_1") is True

    await guard.release("stripe:evt_1")
    assert await guard.seen("stripe:evt_1") is False
    assert await guard.claim("stripe:evt_1") is True


@pytest.mark.asyncio
async def test_database_guard_expired_marker_can_be_reclaimed(uow_factory):
    guard = DatabaseIdempotencyGuard(uow_factory, ttl_seconds=0)
    assert await guard.claim("paypal:WH-1") is True
    assert await guard.seen("paypal:WH-1") is False
    assert await guard.claim("paypal:WH-1") is True


@pytest.mark.asyncio
async def test_database_guard_purges_expired_markers(uow_factory):
    expired = DatabaseIdempotencyGuard(uow_factory, ttl_seconds=0)
    live = DatabaseIdempotencyGuard(uow_factory, ttl_seconds=300)
    for n in range(3):
        assert await expired.claim(f"stripe:evt_old_{n}") is True
    assert await live.claim("stripe:evt_new") is True

    assert await live.purge_expired() == 3
    assert await live.purge_expired() == 0
    assert await live.seen("stripe:evt_new") is True

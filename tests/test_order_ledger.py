import asyncio
from decimal import Decimal

import pytest

from application.dtos.ledger import CreateOrder
from application.dtos.payments import CaptureResult, WebhookEvent, WebhookEventKind
from application.services.order_ledger_service import OrderLedgerApplicationService
from domain.common.exceptions import (
    AffiliateNotFoundException,
    CouponNotRedeemableException,
    IllegalOrderTransitionException,
    OrderAmountMismatchException,
    OrderNotFoundException,
)
from domain.order.entity import (
    Coupon,
    DiscountType,
    Order,
    OrderPaymentStatus,
    OrderStatus,
    OrderTransition,
)


def _event(kind, order, **kw):
    values = dict(
        id=f"evt_{kind.value}",
        type=kind.value,
        provider=order.provider,
        kind=kind,
        provider_ref=order.provider_ref,
    )
    values.update(kw)
    return WebhookEvent(**values)


def _service(uow_factory, gateway_resolver, dispatcher=None, **kw):
    return OrderLedgerApplicationService(uow_factory, gateway_resolver, dispatcher, **kw)


async def _load(uow_factory, order_id):
    async with uow_factory(readonly=True) as uow:
        order = await uow.order_repository.get_by_id(order_id)
        commissions = await uow.commission_repository.list_by_order(order_id)
        affiliate = None
        if order.affiliate_id:
            affiliate = await uow.affiliate_repository.get_by_id(order.affiliate_id)
    return order, commissions, affiliate


def test_order_total_is_subtotal_minus_discount():
    coupon = Coupon(id="c1", code="SAVE10", discount_type=DiscountType.PERCENTAGE, value=Decimal("10"))
    order = Order.create(
        email="a@example.com",
        currency="usd",
        provider="stripe",
        items=[{"product_id": "p1", "name": "Mug", "unit_price": "25.00", "quantity": 4}],
        coupon=coupon,
    )
    assert order.subtotal == Decimal("100.00")
    assert order.discount_amount == Decimal("10.00")
    assert order.total == Decimal("90.00")
    assert order.currency == "USD"
    assert order.items[0].unit_price == Decimal("25.00")


def test_fixed_coupon_never_exceeds_subtotal():
    coupon = Coupon(id="c1", code="BIG", discount_type=DiscountType.FIXED, value=Decimal("50"))
    assert coupon.discount_for(Decimal("30.00")) == Decimal("30.00")


def test_exhausted_coupon_is_not_redeemable():
    coupon = Coupon(id="c1", code="ONCE", discount_type=DiscountType.FIXED, value=Decimal("5"),
                    used_count=1, max_uses=1)
    with pytest.raises(CouponNotRedeemableException):
        coupon.ensure_redeemable()


def test_transition_table():
    order = Order.create(
        email="a@example.com", currency="USD", provider="stripe",
        items=[{"product_id": "p1", "name": "Mug", "unit_price": "10.00"}],
    )
    assert order.can_apply(OrderTransition.COMPLETE) is True
    with pytest.raises(IllegalOrderTransitionException):
        order.can_apply(OrderTransition.REFUND)

    order.apply(OrderTransition.COMPLETE)
    assert order.status == OrderStatus.COMPLETED
    assert order.payment_status == OrderPaymentStatus.PAID
    assert order.paid_at is not None
    # re-applying the same transition is a no-op, not an error
    assert order.can_apply(OrderTransition.COMPLETE) is False
    with pytest.raises(IllegalOrderTransitionException):
        order.can_apply(OrderTransition.FAIL)

    order.apply(OrderTransition.REFUND)
    assert order.status == OrderStatus.REFUNDED
    with pytest.raises(IllegalOrderTransitionException):
        order.can_apply(OrderTransition.COMPLETE)


@pytest.mark.asyncio
async def test_initiate_order_opens_charge(uow_factory, gateway, gateway_resolver, seed):
    affiliate = await seed.affiliate(code="ANA")
    svc = _service(uow_factory, gateway_resolver)
    dto = await svc.initiate_order(CreateOrder(
        email="buyer@example.com",
        items=[{"product_id": "p1", "name": "Mug", "unit_price": "50.00", "quantity": 2}],
        affiliate_code="ANA",
    ))

    assert dto.total == Decimal("100.00")
    assert dto.status == "pending"
    assert dto.provider_ref == "pi_1"
    assert dto.client_params == {"client_secret": "cs_test"}
    assert dto.affiliate_id == affiliate.id
    charge = gateway.charges[0]
    assert charge.idempotency_key == f"order_charge_{dto.id}"
    assert charge.metadata == {"order_id": dto.id}

    order, _, _ = await _load(uow_factory, dto.id)
    assert order.provider_ref == "pi_1"
    assert len(order.items) == 1


@pytest.mark.asyncio
async def test_unknown_affiliate_code_is_rejected(uow_factory, gateway_resolver):
    svc = _service(uow_factory, gateway_resolver)
    with pytest.raises(AffiliateNotFoundException):
        await svc.initiate_order(CreateOrder(
            email="buyer@example.com",
            items=[{"product_id": "p1", "name": "Mug", "unit_price": "10.00"}],
            affiliate_code="NOPE",
        ))


@pytest.mark.asyncio
async def test_fully_discounted_order_completes_without_charge(uow_factory, gateway, gateway_resolver, seed):
    await seed.coupon(code="FREE", discount_type="percentage", value=Decimal("100.00"))
    svc = _service(uow_factory, gateway_resolver)
    dto = await svc.initiate_order(CreateOrder(
        email="buyer@example.com",
        items=[{"product_id": "p1", "name": "Mug", "unit_price": "10.00"}],
        coupon_code="FREE",
    ))
    assert dto.total == Decimal("0.00")
    assert dto.status == "completed"
    assert dto.payment_status == "paid"
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_payment_completed_creates_commission(uow_factory, gateway_resolver, dispatcher, seed):
    affiliate = await seed.affiliate()
    row = await seed.order(total="100.00", affiliate_id=affiliate.id)
    svc = _service(uow_factory, gateway_resolver, dispatcher)

    outcome = await svc.complete_payment(_event(
        WebhookEventKind.PAYMENT_COMPLETED, row, charge_ref="ch_1", amount=Decimal("100.00")
    ))

    assert outcome.applied is True
    order, commissions, aff = await _load(uow_factory, row.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.payment_status == OrderPaymentStatus.PAID
    assert order.charge_ref == "ch_1"
    assert len(commissions) == 1
    assert commissions[0].commission_amount == Decimal("20.00")
    assert commissions[0].status.value == "pending"
    assert aff.total_orders == 1
    assert aff.total_revenue == Decimal("100.00")
    assert aff.total_commission == Decimal("20.00")
    assert aff.pending_commission == Decimal("20.00")
    assert ("notify_order_paid", row.id) in dispatcher.calls


@pytest.mark.asyncio
async def test_replayed_completion_is_noop(uow_factory, gateway_resolver, dispatcher, seed):
    affiliate = await seed.affiliate()
    row = await seed.order(total="100.00", affiliate_id=affiliate.id)
    svc = _service(uow_factory, gateway_resolver, dispatcher)
    event = _event(WebhookEventKind.PAYMENT_COMPLETED, row, amount=Decimal("100.00"))

    await svc.complete_payment(event)
    outcome = await svc.complete_payment(event)

    assert outcome.applied is False
    assert outcome.reason == "already_applied"
    _, commissions, aff = await _load(uow_factory, row.id)
    assert len(commissions) == 1
    assert aff.total_orders == 1
    assert aff.pending_commission == Decimal("20.00")
    assert dispatcher.calls.count(("notify_order_paid", row.id)) == 1


@pytest.mark.asyncio
async def test_amount_mismatch_leaves_order_pending(uow_factory, gateway_resolver, seed):
    row = await seed.order(total="100.00")
    svc = _service(uow_factory, gateway_resolver)
    with pytest.raises(OrderAmountMismatchException):
        await svc.complete_payment(_event(WebhookEventKind.PAYMENT_COMPLETED, row, amount=Decimal("50.00")))
    order, _, _ = await _load(uow_factory, row.id)
    assert order.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_failure_after_completion_is_ignored(uow_factory, gateway_resolver, seed):
    row = await seed.paid_order()
    svc = _service(uow_factory, gateway_resolver)
    outcome = await svc.fail_payment(_event(WebhookEventKind.PAYMENT_FAILED, row))
    assert outcome.applied is False
    assert outcome.reason == "illegal"
    order, _, _ = await _load(uow_factory, row.id)
    assert order.status == OrderStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_pending_order(uow_factory, gateway_resolver, seed):
    row = await seed.order()
    svc = _service(uow_factory, gateway_resolver)
    await svc.cancel_payment(_event(WebhookEventKind.PAYMENT_CANCELLED, row))
    order, _, _ = await _load(uow_factory, row.id)
    assert order.status == OrderStatus.CANCELLED
    assert order.payment_status == OrderPaymentStatus.CANCELLED


@pytest.mark.asyncio
async def test_unknown_order_raises(uow_factory, gateway_resolver):
    svc = _service(uow_factory, gateway_resolver)
    event = WebhookEvent(id="evt_x", type="payment_intent.succeeded", provider="stripe",
                         kind=WebhookEventKind.PAYMENT_COMPLETED, provider_ref="pi_missing")
    with pytest.raises(OrderNotFoundException):
        await svc.complete_payment(event)


@pytest.mark.asyncio
async def test_coupon_usage_follows_payment_and_refund(uow_factory, gateway_resolver, seed):
    await seed.coupon(code="SAVE10")
    svc = _service(uow_factory, gateway_resolver)
    dto = await svc.initiate_order(CreateOrder(
        email="buyer@example.com",
        items=[{"product_id": "p1", "name": "Mug", "unit_price": "100.00"}],
        coupon_code="SAVE10",
    ))
    assert dto.total == Decimal("90.00")

    async def coupon_state():
        async with uow_factory(readonly=True) as uow:
            coupon = await uow.coupon_repository.get_by_code("SAVE10")
            redemption = await uow.coupon_repository.get_redemption_for_order(dto.id)
        return coupon.used_count, redemption

    used, redemption = await coupon_state()
    assert used == 0 and redemption is None

    event = WebhookEvent(id="evt_1", type="payment_intent.succeeded", provider="stripe",
                         kind=WebhookEventKind.PAYMENT_COMPLETED, order_id=dto.id, amount=Decimal("90.00"))
    await svc.complete_payment(event)
    await svc.complete_payment(event)
    used, redemption = await coupon_state()
    assert used == 1
    assert redemption.amount_discounted == Decimal("10.00")

    await svc.refund_payment(WebhookEvent(id="evt_2", type="charge.refunded", provider="stripe",
                                          kind=WebhookEventKind.PAYMENT_REFUNDED, order_id=dto.id))
    used, redemption = await coupon_state()
    assert used == 0
    # the redemption row stays as audit trail
    assert redemption is not None


@pytest.mark.asyncio
async def test_refund_releases_unpaid_commission(uow_factory, gateway_resolver, seed):
    affiliate = await seed.affiliate(total_commission=Decimal("20.00"), pending_commission=Decimal("20.00"))
    row = await seed.paid_order(affiliate_id=affiliate.id)
    await seed.commission(affiliate, row, status="pending")
    svc = _service(uow_factory, gateway_resolver)

    await svc.refund_payment(_event(WebhookEventKind.PAYMENT_REFUNDED, row))

    order, commissions, aff = await _load(uow_factory, row.id)
    assert order.status == OrderStatus.REFUNDED
    assert commissions[0].status.value == "cancelled"
    assert aff.pending_commission == Decimal("0.00")
    assert aff.total_commission == Decimal("20.00")


@pytest.mark.asyncio
async def test_refund_after_payout_holds_by_default(uow_factory, gateway_resolver, dispatcher, seed):
    affiliate = await seed.affiliate(total_commission=Decimal("20.00"), paid_commission=Decimal("20.00"),
                                     total_paid_out=Decimal("20.00"))
    row = await seed.paid_order(affiliate_id=affiliate.id)
    await seed.commission(affiliate, row, status="paid", transfer_id="tr_9", transfer_status="processing")
    svc = _service(uow_factory, gateway_resolver, dispatcher)

    await svc.refund_payment(_event(WebhookEventKind.PAYMENT_REFUNDED, row))

    _, commissions, aff = await _load(uow_factory, row.id)
    assert commissions[0].status.value == "cancelled"
    assert "held for operator review" in commissions[0].notes
    assert aff.paid_commission == Decimal("20.00")
    assert not [c for c in dispatcher.calls if c[0] == "enqueue_transfer_reversal"]


@pytest.mark.asyncio
async def test_refund_after_payout_with_clawback(uow_factory, gateway_resolver, dispatcher, seed):
    affiliate = await seed.affiliate(total_commission=Decimal("20.00"), paid_commission=Decimal("20.00"),
                                     total_paid_out=Decimal("20.00"))
    row = await seed.paid_order(affiliate_id=affiliate.id)
    commission = await seed.commission(affiliate, row, status="paid", transfer_id="tr_9",
                                       transfer_status="processing")
    svc = _service(uow_factory, gateway_resolver, dispatcher, refund_policy="clawback")

    await svc.refund_payment(_event(WebhookEventKind.PAYMENT_REFUNDED, row))

    _, _, aff = await _load(uow_factory, row.id)
    assert aff.paid_commission == Decimal("0.00")
    assert aff.total_paid_out == Decimal("0.00")
    assert ("enqueue_transfer_reversal", commission.id, "tr_9") in dispatcher.calls


@pytest.mark.asyncio
async def test_auto_approve_enqueues_payout_for_automated_affiliate(uow_factory, gateway_resolver, dispatcher, seed):
    affiliate = await seed.affiliate(payout_automation_enabled=True)
    row = await seed.order(total="100.00", affiliate_id=affiliate.id)
    svc = _service(uow_factory, gateway_resolver, dispatcher, auto_approve=True)

    await svc.complete_payment(_event(WebhookEventKind.PAYMENT_COMPLETED, row, amount=Decimal("100.00")))

    _, commissions, _ = await _load(uow_factory, row.id)
    assert commissions[0].status.value == "approved"
    assert ("enqueue_commission_payout", commissions[0].id) in dispatcher.calls


@pytest.mark.asyncio
async def test_order_approval_captures_then_completes(uow_factory, gateway, gateway_resolver, seed):
    row = await seed.order(total="100.00", provider="paypal", provider_ref="PP-1")
    gateway.capture_result = CaptureResult(provider="paypal", provider_ref="PP-1", status="paid",
                                           charge_ref="CAP-1", amount=Decimal("100.00"))
    svc = _service(uow_factory, gateway_resolver)

    outcome = await svc.handle_order_approved(_event(WebhookEventKind.ORDER_APPROVED, row))

    assert outcome.applied is True
    order, _, _ = await _load(uow_factory, row.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.charge_ref == "CAP-1"


@pytest.mark.asyncio
async def test_concurrent_completions_apply_once(uow_factory, gateway_resolver, dispatcher, seed):
    affiliate = await seed.affiliate()
    row = await seed.order(total="100.00", affiliate_id=affiliate.id)
    svc = _service(uow_factory, gateway_resolver, dispatcher)
    event = _event(WebhookEventKind.PAYMENT_COMPLETED, row, amount=Decimal("100.00"))

    outcomes = await asyncio.gather(*(svc.complete_payment(event) for _ in range(5)))

    assert sorted(o.reason for o in outcomes) == ["already_applied"] * 4 + ["applied"]
    _, commissions, aff = await _load(uow_factory, row.id)
    assert len(commissions) == 1
    assert aff.total_orders == 1
    assert aff.pending_commission == Decimal("20.00")
    assert dispatcher.calls.count(("notify_order_paid", row.id)) == 1


@pytest.mark.asyncio
async def test_failed_notification_does_not_undo_completion(uow_factory, gateway_resolver, seed):
    class BrokerDown:
        def notify_order_paid(self, order_id):
            raise ConnectionError("broker down")

    row = await seed.order(total="100.00")
    svc = _service(uow_factory, gateway_resolver, BrokerDown())

    outcome = await svc.complete_payment(_event(WebhookEventKind.PAYMENT_COMPLETED, row))

    assert outcome.applied is True
    order, _, _ = await _load(uow_factory, row.id)
    assert order.status == OrderStatus.COMPLETED

import asyncio
from decimal import Decimal

import pytest

from application.dtos.payments import WebhookEvent, WebhookEventKind
from application.services.commission_service import CommissionApplicationService
from application.services.order_ledger_service import OrderLedgerApplicationService
from application.services.payout_service import PayoutEngine
from domain.affiliate.entity import CommissionStatus, TransferStatus
from domain.common.exceptions import (
    CommissionAlreadyPaidException,
    CommissionNotFoundException,
    CommissionNotPayableException,
)
from infrastructure.external.payments.exceptions import PaymentProviderError


async def _state(uow_factory, commission_id):
    async with uow_factory(readonly=True) as uow:
        commission = await uow.commission_repository.get_by_id(commission_id)
        affiliate = await uow.affiliate_repository.get_by_id(commission.affiliate_id)
    return commission, affiliate


async def _approved(seed, **kw):
    affiliate = await seed.affiliate(total_commission=Decimal("20.00"), pending_commission=Decimal("20.00"))
    order = await seed.paid_order(total="100.00", affiliate_id=affiliate.id, **kw.pop("order", {}))
    commission = await seed.commission(affiliate, order, **kw)
    return affiliate, order, commission


@pytest.mark.asyncio
async def test_successful_payout(uow_factory, gateway, gateway_resolver, seed):
    affiliate, order, row = await _approved(seed)
    engine = PayoutEngine(uow_factory, gateway_resolver)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "paid"
    assert result.transfer_id == "tr_1"
    req = gateway.transfers[0]
    assert req.amount_minor == 2000
    assert req.currency == "USD"
    assert req.destination == "acct_1"
    assert req.source_charge == "ch_original"
    assert req.idempotency_key == f"commission_payout_{row.id}"
    assert req.transfer_group == f"order_{order.id}"

    commission, aff = await _state(uow_factory, row.id)
    assert commission.status == CommissionStatus.PAID
    assert commission.transfer_status == TransferStatus.PROCESSING
    assert commission.transfer_attempt_count == 1
    assert commission.paid_at is not None
    assert aff.pending_commission == Decimal("0.00")
    assert aff.paid_commission == Decimal("20.00")
    assert aff.total_paid_out == Decimal("20.00")
    assert aff.last_payout_at is not None


@pytest.mark.asyncio
async def test_paid_commission_is_never_transferred_twice(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed)
    engine = PayoutEngine(uow_factory, gateway_resolver)

    await engine.pay_commission(row.id)
    again = await engine.pay_commission(row.id)

    assert again.outcome == "already_paid"
    assert len(gateway.transfers) == 1
    _, aff = await _state(uow_factory, row.id)
    assert aff.paid_commission == Decimal("20.00")


@pytest.mark.asyncio
async def test_provider_failure_is_recorded(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed)
    gateway.transfer_error = PaymentProviderError(
        "Insufficient available balance", provider="stripe", provider_code="balance_insufficient"
    )
    engine = PayoutEngine(uow_factory, gateway_resolver)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "failed"
    assert result.retryable is True
    assert result.error == "stripe [balance_insufficient]: Insufficient available balance"
    commission, aff = await _state(uow_factory, row.id)
    assert commission.status == CommissionStatus.APPROVED
    assert commission.transfer_status == TransferStatus.FAILED
    assert commission.transfer_attempt_count == 1
    assert commission.transfer_error == result.error
    assert aff.paid_commission == Decimal("0.00")


@pytest.mark.asyncio
async def test_attempt_ceiling_stops_automatic_retries(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed, transfer_attempt_count=5, transfer_status="failed")
    engine = PayoutEngine(uow_factory, gateway_resolver, max_attempts=5)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "skipped"
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_forced_retry_ignores_ceiling_without_raising_count(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed, transfer_attempt_count=5, transfer_status="failed")
    gateway.transfer_error = PaymentProviderError("Account closed", provider="stripe", provider_code="account_closed")
    engine = PayoutEngine(uow_factory, gateway_resolver, max_attempts=5)

    result = await engine.pay_commission(row.id, force=True)

    assert result.outcome == "failed"
    assert result.retryable is False
    assert len(gateway.transfers) == 1
    commission, _ = await _state(uow_factory, row.id)
    assert commission.transfer_attempt_count == 5


@pytest.mark.asyncio
async def test_forced_retry_rejects_paid_and_unapproved(uow_factory, gateway_resolver, seed):
    _, _, paid = await _approved(seed, status="paid", transfer_id="tr_1", transfer_status="completed")
    _, _, pending = await _approved(seed, status="pending")
    engine = PayoutEngine(uow_factory, gateway_resolver)

    with pytest.raises(CommissionAlreadyPaidException):
        await engine.pay_commission(paid.id, force=True)
    with pytest.raises(CommissionNotPayableException):
        await engine.pay_commission(pending.id, force=True)
    with pytest.raises(CommissionNotFoundException):
        await engine.pay_commission("missing")


@pytest.mark.asyncio
async def test_unresolvable_charge_fails_attempt(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed, order={"charge_ref": None})
    gateway.charge_ref = None
    engine = PayoutEngine(uow_factory, gateway_resolver)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "failed"
    assert "[charge_unresolved]" in result.error
    assert gateway.transfers == []
    commission, _ = await _state(uow_factory, row.id)
    assert commission.transfer_attempt_count == 1


@pytest.mark.asyncio
async def test_charge_resolved_from_provider_ref(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed, order={"charge_ref": None})
    engine = PayoutEngine(uow_factory, gateway_resolver)

    await engine.pay_commission(row.id)

    assert gateway.transfers[0].source_charge == "ch_resolved"


@pytest.mark.asyncio
async def test_order_from_other_provider_pays_from_balance(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed, order={"provider": "paypal", "charge_ref": None})
    engine = PayoutEngine(uow_factory, gateway_resolver)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "paid"
    assert gateway.transfers[0].source_charge is None


@pytest.mark.asyncio
async def test_refunded_order_fails_integrity_check(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed, order={"status": "refunded", "payment_status": "refunded"})
    engine = PayoutEngine(uow_factory, gateway_resolver)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "failed"
    assert "[integrity_check]" in result.error
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_tampered_amount_fails_integrity_check(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed, commission_amount=Decimal("90.00"))
    engine = PayoutEngine(uow_factory, gateway_resolver)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "failed"
    assert "does not match rate" in result.error


@pytest.mark.asyncio
async def test_affiliate_without_payouts_is_skipped(uow_factory, gateway, gateway_resolver, seed):
    affiliate = await seed.affiliate(payout_enabled=False)
    order = await seed.paid_order(affiliate_id=affiliate.id)
    row = await seed.commission(affiliate, order)
    engine = PayoutEngine(uow_factory, gateway_resolver)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "skipped"
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_slow_transfer_times_out(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed)

    async def slow_transfer(req):
        await asyncio.sleep(1)

    gateway.transfer = slow_transfer
    engine = PayoutEngine(uow_factory, gateway_resolver, transfer_timeout=0.01)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "failed"
    assert result.retryable is True
    assert "[timeout]" in result.error


def _refund_event(order):
    return WebhookEvent(id=f"evt_refund_{order.id}", type="charge.refunded", provider="stripe",
                        kind=WebhookEventKind.PAYMENT_REFUNDED, order_id=order.id)


def _refund_during_transfer(gateway, orders, order):
    original = gateway.transfer

    async def transfer(req):
        result = await original(req)
        await orders.refund_payment(_refund_event(order))
        return result

    gateway.transfer = transfer


@pytest.mark.asyncio
async def test_concurrent_payouts_book_one_transfer(uow_factory, gateway, gateway_resolver, seed):
    _, _, row = await _approved(seed)
    engine = PayoutEngine(uow_factory, gateway_resolver)

    results = await asyncio.gather(engine.pay_commission(row.id), engine.pay_commission(row.id))

    assert sorted(r.outcome for r in results) == ["already_paid", "paid"]
    # every request that reached the provider carried the same key
    assert {req.idempotency_key for req in gateway.transfers} == {f"commission_payout_{row.id}"}
    commission, aff = await _state(uow_factory, row.id)
    assert commission.status == CommissionStatus.PAID
    assert commission.transfer_attempt_count == 1
    assert aff.paid_commission == Decimal("20.00")
    assert aff.total_paid_out == Decimal("20.00")
    assert aff.pending_commission == Decimal("0.00")


@pytest.mark.asyncio
async def test_refund_during_transfer_keeps_transfer_on_record(uow_factory, gateway, gateway_resolver,
                                                               dispatcher, seed):
    _, order, row = await _approved(seed)
    orders = OrderLedgerApplicationService(uow_factory, gateway_resolver)
    _refund_during_transfer(gateway, orders, order)
    engine = PayoutEngine(uow_factory, gateway_resolver, dispatcher=dispatcher)

    result = await engine.pay_commission(row.id)

    assert result.outcome == "transferred_after_cancel"
    assert result.transfer_id == "tr_1"
    commission, aff = await _state(uow_factory, row.id)
    assert commission.status == CommissionStatus.CANCELLED
    assert commission.transfer_id == "tr_1"
    assert commission.transfer_status == TransferStatus.PROCESSING
    assert "held for operator review" in commission.notes
    assert aff.paid_commission == Decimal("0.00")
    assert aff.pending_commission == Decimal("0.00")
    assert aff.aggregates_consistent()
    assert dispatcher.calls == []

    attention = await CommissionApplicationService(uow_factory).list_requiring_attention()
    assert [c.id for c in attention] == [row.id]


@pytest.mark.asyncio
async def test_refund_during_transfer_with_clawback_reverses_it(uow_factory, gateway, gateway_resolver,
                                                                dispatcher, seed):
    _, order, row = await _approved(seed)
    orders = OrderLedgerApplicationService(uow_factory, gateway_resolver, refund_policy="clawback")
    _refund_during_transfer(gateway, orders, order)
    engine = PayoutEngine(uow_factory, gateway_resolver, dispatcher=dispatcher, refund_policy="clawback")

    result = await engine.pay_commission(row.id)

    assert result.outcome == "transferred_after_cancel"
    assert dispatcher.calls == [("enqueue_transfer_reversal", row.id, "tr_1")]


@pytest.mark.asyncio
async def test_aggregates_stay_consistent_through_commission_lifecycle(uow_factory, gateway_resolver, seed):
    affiliate = await seed.affiliate()
    row = await seed.order(total="100.00", affiliate_id=affiliate.id)
    orders = OrderLedgerApplicationService(uow_factory, gateway_resolver)
    commissions = CommissionApplicationService(uow_factory, gateway_resolver)
    engine = PayoutEngine(uow_factory, gateway_resolver)

    async def affiliate_state():
        async with uow_factory(readonly=True) as uow:
            return await uow.affiliate_repository.get_by_id(affiliate.id)

    await orders.complete_payment(WebhookEvent(
        id="evt_paid", type="payment_intent.succeeded", provider="stripe",
        kind=WebhookEventKind.PAYMENT_COMPLETED, provider_ref=row.provider_ref, charge_ref="ch_1",
    ))
    aff = await affiliate_state()
    assert aff.aggregates_consistent()
    assert aff.pending_commission == Decimal("20.00")

    async with uow_factory(readonly=True) as uow:
        [commission] = await uow.commission_repository.list_by_order(row.id)
    await commissions.approve(commission.id)
    assert (await affiliate_state()).aggregates_consistent()

    assert (await engine.pay_commission(commission.id)).outcome == "paid"
    aff = await affiliate_state()
    assert aff.aggregates_consistent()
    assert (aff.pending_commission, aff.paid_commission) == (Decimal("0.00"), Decimal("20.00"))

    await orders.refund_payment(_refund_event(row))
    aff = await affiliate_state()
    assert aff.aggregates_consistent()
    assert aff.total_commission == Decimal("20.00")

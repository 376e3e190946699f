from decimal import Decimal

import pytest

from application.dtos.payments import WebhookEvent, WebhookEventKind
from application.services.commission_service import CommissionApplicationService
from domain.affiliate.entity import (
    Affiliate,
    CommissionStatus,
    CommissionType,
    TransferStatus,
    compute_commission,
)
from domain.common.exceptions import CommissionNotPayableException, DomainValidationException


def _service(uow_factory, gateway_resolver=None, dispatcher=None):
    return CommissionApplicationService(uow_factory, gateway_resolver, dispatcher, max_attempts=5)


async def _commission(uow_factory, commission_id):
    async with uow_factory(readonly=True) as uow:
        commission = await uow.commission_repository.get_by_id(commission_id)
        affiliate = await uow.affiliate_repository.get_by_id(commission.affiliate_id)
    return commission, affiliate


def test_commission_rates():
    assert compute_commission(Decimal("100.00"), CommissionType.PERCENTAGE, Decimal("20")) == Decimal("20.00")
    assert compute_commission(Decimal("33.33"), CommissionType.PERCENTAGE, Decimal("10")) == Decimal("3.33")
    assert compute_commission(Decimal("100.00"), CommissionType.FIXED, Decimal("7.50")) == Decimal("7.50")


def test_percentage_rate_cannot_exceed_hundred():
    with pytest.raises(DomainValidationException):
        Affiliate(id="a1", code="A", name="A", email="a@example.com",
                  commission_type=CommissionType.PERCENTAGE, commission_value=Decimal("120"))


@pytest.mark.asyncio
async def test_approve_pending_commission(uow_factory, dispatcher, seed):
    affiliate = await seed.affiliate()
    order = await seed.paid_order(affiliate_id=affiliate.id)
    row = await seed.commission(affiliate, order, status="pending")
    svc = _service(uow_factory, dispatcher=dispatcher)

    dto = await svc.approve(row.id)
    again = await svc.approve(row.id)

    assert dto.status == "approved"
    assert dto.approved_at is not None
    assert again.status == "approved"
    # no payout automation on this affiliate
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_cancelled_commission_cannot_be_approved(uow_factory, seed):
    affiliate = await seed.affiliate()
    order = await seed.paid_order(affiliate_id=affiliate.id)
    row = await seed.commission(affiliate, order, status="cancelled")
    with pytest.raises(CommissionNotPayableException):
        await _service(uow_factory).approve(row.id)


@pytest.mark.asyncio
async def test_transfer_confirmation(uow_factory, seed):
    affiliate = await seed.affiliate()
    order = await seed.paid_order(affiliate_id=affiliate.id)
    row = await seed.commission(affiliate, order, status="paid", transfer_id="tr_1", transfer_status="processing")
    event = WebhookEvent(id="evt_1", type="transfer.created", provider="stripe",
                         kind=WebhookEventKind.TRANSFER_CONFIRMED, transfer_ref="tr_1")

    assert await _service(uow_factory).handle_transfer_confirmed(event) is True
    commission, _ = await _commission(uow_factory, row.id)
    assert commission.transfer_status == TransferStatus.COMPLETED
    assert await _service(uow_factory).handle_transfer_confirmed(event) is False


@pytest.mark.asyncio
async def test_reversed_transfer_makes_commission_payable_again(uow_factory, seed):
    affiliate = await seed.affiliate(total_commission=Decimal("20.00"), paid_commission=Decimal("20.00"),
                                     total_paid_out=Decimal("20.00"))
    order = await seed.paid_order(affiliate_id=affiliate.id)
    row = await seed.commission(affiliate, order, status="paid", transfer_id="tr_1",
                                transfer_status="completed", transfer_attempt_count=1)
    event = WebhookEvent(id="evt_2", type="transfer.reversed", provider="stripe",
                         kind=WebhookEventKind.TRANSFER_REVERSED, transfer_ref="tr_1")

    assert await _service(uow_factory).handle_transfer_reversed(event) is True

    commission, aff = await _commission(uow_factory, row.id)
    assert commission.status == CommissionStatus.APPROVED
    assert commission.transfer_id is None
    assert commission.transfer_status == TransferStatus.FAILED
    assert commission.transfer_error == "stripe [transfer_reversed]: transfer reversed by provider"
    assert aff.paid_commission == Decimal("0.00")
    assert aff.pending_commission == Decimal("20.00")
    assert aff.aggregates_consistent()


@pytest.mark.asyncio
async def test_account_update_refreshes_capabilities(uow_factory, seed):
    affiliate = await seed.affiliate(payout_enabled=False, charges_enabled=False, payout_account_ref="acct_9")
    event = WebhookEvent(
        id="evt_3", type="account.updated", provider="stripe", kind=WebhookEventKind.ACCOUNT_UPDATED,
        account_ref="acct_9",
        data={"charges_enabled": True, "payouts_enabled": True, "details_submitted": True},
    )

    assert await _service(uow_factory).handle_account_updated(event) is True

    async with uow_factory(readonly=True) as uow:
        refreshed = await uow.affiliate_repository.get_by_id(affiliate.id)
    assert refreshed.payout_enabled is True
    assert refreshed.charges_enabled is True


@pytest.mark.asyncio
async def test_attention_list(uow_factory, seed):
    affiliate = await seed.affiliate()
    exhausted = await seed.commission(affiliate, await seed.paid_order(affiliate_id=affiliate.id),
                                      transfer_attempt_count=5, transfer_status="failed")
    held = await seed.commission(affiliate, await seed.paid_order(affiliate_id=affiliate.id),
                                 status="cancelled", transfer_id="tr_5")
    await seed.commission(affiliate, await seed.paid_order(affiliate_id=affiliate.id))
    svc = _service(uow_factory)

    ids = {c.id for c in await svc.list_requiring_attention()}
    assert ids == {exhausted.id, held.id}
    assert [c.id for c in await svc.list_requiring_attention(status="cancelled")] == [held.id]


@pytest.mark.asyncio
async def test_clawback_reverses_transfer(uow_factory, gateway, gateway_resolver, seed):
    affiliate = await seed.affiliate()
    order = await seed.paid_order(affiliate_id=affiliate.id)
    row = await seed.commission(affiliate, order, status="cancelled", transfer_id="tr_7")

    reversal = await _service(uow_factory, gateway_resolver).reverse_transfer(row.id, "tr_7")

    assert reversal == "trr_1"
    assert gateway.reversals == [("tr_7", 2000, f"commission_reversal_{row.id}")]

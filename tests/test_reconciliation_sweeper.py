from contextlib import asynccontextmanager
from decimal import Decimal

import pytest

from application.dtos.payments import AccountCapabilities
from application.services.payout_service import PayoutEngine
from application.services.reconciliation_service import ReconciliationSweeper
from domain.common.exceptions import (
    AuthenticationFailedException,
    SweepInProgressException,
    SweepNotConfiguredException,
)

SECRET = "cron-secret"


def _sweeper(uow_factory, gateway_resolver, **kw):
    engine = PayoutEngine(uow_factory, gateway_resolver, max_attempts=5)
    kw.setdefault("cron_secret", SECRET)
    return ReconciliationSweeper(uow_factory, gateway_resolver, engine, **kw)


async def _payable(seed, **affiliate_kw):
    affiliate = await seed.affiliate(**affiliate_kw)
    order = await seed.paid_order(affiliate_id=affiliate.id)
    commission = await seed.commission(affiliate, order)
    return affiliate, commission


@pytest.mark.asyncio
async def test_sweep_requires_configured_secret(uow_factory, gateway_resolver):
    sweeper = _sweeper(uow_factory, gateway_resolver, cron_secret=None)
    with pytest.raises(SweepNotConfiguredException):
        await sweeper.run(SECRET)


@pytest.mark.asyncio
async def test_sweep_rejects_wrong_credential(uow_factory, gateway, gateway_resolver, seed):
    await _payable(seed)
    sweeper = _sweeper(uow_factory, gateway_resolver)
    with pytest.raises(AuthenticationFailedException):
        await sweeper.run("wrong")
    with pytest.raises(AuthenticationFailedException):
        await sweeper.run(None)
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_sweep_pays_every_capable_affiliate(uow_factory, gateway, gateway_resolver, seed):
    await _payable(seed)
    await _payable(seed)
    await seed.affiliate(payout_account_ref=None)

    summary = await _sweeper(uow_factory, gateway_resolver).run(SECRET)

    assert summary.success is True
    assert summary.processed == 2
    assert summary.succeeded == 2
    assert summary.failed == 0
    assert summary.commissions_paid == 2
    assert len(gateway.transfers) == 2


@pytest.mark.asyncio
async def test_stale_payout_flag_is_refreshed(uow_factory, gateway, gateway_resolver, seed):
    affiliate, commission = await _payable(seed, payout_enabled=False, payout_account_ref="acct_stale")

    summary = await _sweeper(uow_factory, gateway_resolver).run(SECRET)

    assert gateway.capability_checks == ["acct_stale"]
    assert summary.commissions_paid == 1
    async with uow_factory(readonly=True) as uow:
        refreshed = await uow.affiliate_repository.get_by_id(affiliate.id)
    assert refreshed.payout_enabled is True


@pytest.mark.asyncio
async def test_disabled_account_is_skipped(uow_factory, gateway, gateway_resolver, seed):
    await _payable(seed, payout_enabled=False)
    gateway.capabilities = AccountCapabilities(account_ref="acct_1", charges_enabled=True, payouts_enabled=False)

    summary = await _sweeper(uow_factory, gateway_resolver).run(SECRET)

    assert summary.skipped == 1
    assert summary.processed == 0
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_one_affiliate_failure_does_not_stop_the_sweep(uow_factory, gateway, gateway_resolver, seed):
    broken, _ = await _payable(seed, code="BROKEN", payout_enabled=False, payout_account_ref="acct_bad")
    await _payable(seed)
    healthy_caps = gateway.capabilities

    async def capabilities(account_ref):
        if account_ref == "acct_bad":
            raise RuntimeError("account lookup failed")
        return healthy_caps

    gateway.get_account_capabilities = capabilities

    summary = await _sweeper(uow_factory, gateway_resolver).run(SECRET)

    assert summary.failed == 1
    assert summary.succeeded == 1
    assert summary.commissions_paid == 1
    assert summary.errors[0].affiliate_code == "BROKEN"
    assert "account lookup failed" in summary.errors[0].error


@pytest.mark.asyncio
async def test_exhausted_commissions_are_left_alone(uow_factory, gateway, gateway_resolver, seed):
    affiliate = await seed.affiliate()
    order = await seed.paid_order(affiliate_id=affiliate.id)
    await seed.commission(affiliate, order, transfer_attempt_count=5, transfer_status="failed")

    summary = await _sweeper(uow_factory, gateway_resolver).run(SECRET)

    assert summary.skipped == 1
    assert gateway.transfers == []


@pytest.mark.asyncio
async def test_failed_transfers_are_counted(uow_factory, gateway, gateway_resolver, seed):
    from infrastructure.external.payments.exceptions import PaymentProviderError

    _, commission = await _payable(seed)
    gateway.transfer_error = PaymentProviderError("declined", provider="stripe", provider_code="account_invalid")

    summary = await _sweeper(uow_factory, gateway_resolver).run(SECRET)

    assert summary.processed == 1
    assert summary.commissions_failed == 1
    async with uow_factory(readonly=True) as uow:
        row = await uow.commission_repository.get_by_id(commission.id)
    assert row.transfer_attempt_count == 1
    assert row.commission_amount == Decimal("20.00")


@pytest.mark.asyncio
async def test_concurrent_sweep_is_refused(uow_factory, gateway_resolver):
    @asynccontextmanager
    async def held_lock():
        raise TimeoutError("lock held")
        yield

    sweeper = _sweeper(uow_factory, gateway_resolver, lock_factory=held_lock)
    with pytest.raises(SweepInProgressException):
        await sweeper.run(SECRET)


@pytest.mark.asyncio
async def test_trusted_run_skips_credential_check(uow_factory, gateway_resolver):
    summary = await _sweeper(uow_factory, gateway_resolver).run(authorized=True)
    assert summary.processed == 0

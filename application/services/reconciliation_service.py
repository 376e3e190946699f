"""
Reconciliation sweeper - periodic batch that pays out every payable
commission of every payout-capable affiliate.
"""
from __future__ import annotations

import hmac
from contextlib import AsyncExitStack
from typing import AsyncContextManager, Callable, Optional

from application.dtos.ledger import SweepError, SweepSummary
from application.ports.payment_gateway import PaymentGateway
from application.services.payout_service import PayoutEngine
from domain.affiliate.entity import Affiliate
from domain.common.exceptions import (
    AuthenticationFailedException,
    SweepInProgressException,
    SweepNotConfiguredException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from core.logging_config import get_logger


logger = get_logger(__name__)

# Returns an async context manager that raises TimeoutError when the lock is taken
LockFactory = Callable[[], AsyncContextManager]


class ReconciliationSweeper:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_resolver: Callable[[str], PaymentGateway],
        payout_engine: PayoutEngine,
        *,
        cron_secret: Optional[str],
        batch_size: int = 50,
        lock_factory: Optional[LockFactory] = None,
    ):
        self._uow_factory = uow_factory
        self._resolve_gateway = gateway_resolver
        self._engine = payout_engine
        self._cron_secret = cron_secret
        self._batch_size = batch_size
        self._lock_factory = lock_factory

    def authorize(self, credential: Optional[str]) -> None:
        """Fail closed: an unset secret disables the sweep endpoint."""
        if not self._cron_secret:
            raise SweepNotConfiguredException()
        if not credential or not hmac.compare_digest(credential.encode(), self._cron_secret.encode()):
            raise AuthenticationFailedException("Invalid sweep credential")

    async def run(self, credential: Optional[str] = None, *, authorized: bool = False) -> SweepSummary:
        if not authorized:
            self.authorize(credential)
        async with AsyncExitStack() as stack:
            if self._lock_factory is not None:
                try:
                    await stack.enter_async_context(self._lock_factory())
                except TimeoutError:
                    raise SweepInProgressException()
            return await self._sweep()

    async def _sweep(self) -> SweepSummary:
        summary = SweepSummary()
        async with self._uow_factory(readonly=True) as uow:
            candidates = await uow.affiliate_repository.list_payout_candidates()
        logger.info("payout_sweep_started", affiliates=len(candidates))

        for affiliate in candidates:
            try:
                await self._sweep_affiliate(affiliate, summary)
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(SweepError(affiliate_code=affiliate.code, error=str(exc)))
                logger.exception("payout_sweep_affiliate_failed", affiliate_id=affiliate.id)

        logger.info(
            "payout_sweep_finished",
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            commissions_paid=summary.commissions_paid,
            commissions_failed=summary.commissions_failed,
        )
        return summary

    async def _sweep_affiliate(self, affiliate: Affiliate, summary: SweepSummary) -> None:
        if not affiliate.payout_enabled and not await self._refresh_capabilities(affiliate):
            summary.skipped += 1
            return

        async with self._uow_factory(readonly=True) as uow:
            payable = await uow.commission_repository.list_payable(
                affiliate.id, max_attempts=self._engine.max_attempts, limit=self._batch_size
            )
        if not payable:
            summary.skipped += 1
            return

        summary.processed += 1
        for commission in payable:
            try:
                result = await self._engine.pay_commission(commission.id)
            except Exception as exc:
                summary.commissions_failed += 1
                logger.error("payout_sweep_commission_failed", commission_id=commission.id, error=str(exc))
                continue
            if result.outcome == "paid":
                summary.commissions_paid += 1
            elif result.outcome == "failed":
                summary.commissions_failed += 1
        summary.succeeded += 1

    async def _refresh_capabilities(self, affiliate: Affiliate) -> bool:
        """Stored flags may lag the provider; re-read before skipping."""
        gateway = self._resolve_gateway(affiliate.payout_provider)
        caps = await gateway.get_account_capabilities(affiliate.payout_account_ref)
        async with self._uow_factory() as uow:
            await uow.affiliate_repository.update_capabilities(
                affiliate.id,
                charges_enabled=caps.charges_enabled,
                payouts_enabled=caps.payouts_enabled,
                details_submitted=caps.details_submitted,
            )
        logger.info("affiliate_capabilities_refreshed", affiliate_id=affiliate.id,
                    payout_enabled=caps.payout_enabled)
        affiliate.payout_enabled = caps.payout_enabled
        return caps.payout_enabled

"""
Payout engine - moves one approved commission to the affiliate's payout
account.

Each attempt runs in three phases:
1. read: load commission, affiliate and order; check eligibility and integrity
2. network: one provider transfer under the commission's idempotency key,
   with no transaction open
3. record: a conditional update that only lands on an approved, untransferred
   row, so a concurrent attempt can never book the same payout twice
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from application.dtos.ledger import PayoutResult
from application.dtos.payments import TransferRequest
from application.ports.payment_gateway import PaymentGateway
from application.ports.task_dispatcher import LedgerTaskDispatcher
from application.services.event_publisher import publish_ledger_events
from domain.affiliate.entity import Affiliate, AffiliateCommission, CommissionStatus
from domain.affiliate.service import CommissionLedgerDomainService
from domain.common.exceptions import (
    CommissionAlreadyPaidException,
    CommissionNotFoundException,
    CommissionNotPayableException,
)
from domain.common.money import amounts_match, to_minor_units
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order
from infrastructure.external.payments.exceptions import PaymentProviderError
from core.logging_config import get_logger


logger = get_logger(__name__)


class PayoutAttemptFailed(Exception):
    """Raised inside an attempt; the message is what lands in transfer_error."""

    def __init__(self, provider: str, code: str, message: str, *, retryable: bool = False):
        self.provider = provider
        self.code = code
        self.retryable = retryable
        super().__init__(f"{provider} [{code}]: {message}")


class PayoutEngine:
    """Pays single commissions; used by the sweeper, the payout task and operator retries."""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_resolver: Callable[[str], PaymentGateway],
        *,
        dispatcher: Optional[LedgerTaskDispatcher] = None,
        max_attempts: int = 5,
        transfer_timeout: float = 30.0,
        refund_policy: str = "hold",
    ):
        self._uow_factory = uow_factory
        self._resolve_gateway = gateway_resolver
        self._dispatcher = dispatcher
        self._clawback = refund_policy == "clawback"
        self._max_attempts = max_attempts
        self._transfer_timeout = transfer_timeout

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def pay_commission(self, commission_id: str, *, force: bool = False) -> PayoutResult:
        """
        Attempt the payout of one commission.

        force=True is the operator retry: it ignores the attempt ceiling but
        still refuses paid and non-approved commissions.
        """
        async with self._uow_factory(readonly=True) as uow:
            commission = await uow.commission_repository.get_by_id(commission_id)
            if commission is None:
                raise CommissionNotFoundException(commission_id)
            skip = self._check_eligibility(commission, force=force)
            if skip is not None:
                return skip
            affiliate = await uow.affiliate_repository.get_by_id(commission.affiliate_id)
            order = await uow.order_repository.get_by_id(commission.order_id)

        if affiliate is None or not affiliate.payout_account_ref:
            logger.info("payout_skipped_no_account", commission_id=commission_id)
            return PayoutResult(commission_id=commission_id, outcome="skipped",
                                error="affiliate has no payout account")
        if not force and not affiliate.is_payout_eligible:
            return PayoutResult(commission_id=commission_id, outcome="skipped",
                                error="affiliate payouts disabled")

        provider = affiliate.payout_provider
        try:
            self._check_integrity(commission, order, provider)
            amount_minor = to_minor_units(commission.commission_amount, commission.currency)
            if amount_minor < 1:
                return PayoutResult(commission_id=commission_id, outcome="skipped",
                                    error="amount below one minor unit")
            gateway = self._resolve_gateway(provider)
            source_charge = await self._source_charge(gateway, order)
            transfer = await self._transfer(gateway, commission, affiliate, order, amount_minor, source_charge)
        except PayoutAttemptFailed as exc:
            return await self._record_failure(commission, str(exc), retryable=exc.retryable)
        except PaymentProviderError as exc:
            return await self._record_failure(commission, exc.ledger_message(), retryable=exc.retryable)

        late = False
        async with self._uow_factory() as uow:
            ledger = CommissionLedgerDomainService(uow.affiliate_repository, uow.commission_repository)
            recorded = await ledger.record_transfer_success(commission, transfer.transfer_id)
            if not recorded:
                # refunded mid-transfer: the money moved, so the row must keep the transfer id
                late = await ledger.record_transfer_after_cancel(
                    commission, transfer.transfer_id, clawback=self._clawback
                )
            events = ledger.clear_events()
        publish_ledger_events(self._dispatcher, events)
        if late:
            logger.error("payout_transferred_after_cancel", commission_id=commission_id,
                         affiliate_id=affiliate.id, transfer_id=transfer.transfer_id,
                         amount=str(commission.commission_amount), clawback=self._clawback)
            return PayoutResult(commission_id=commission_id, outcome="transferred_after_cancel",
                                transfer_id=transfer.transfer_id)
        if not recorded:
            logger.warning("payout_already_recorded", commission_id=commission_id,
                           transfer_id=transfer.transfer_id)
            return PayoutResult(commission_id=commission_id, outcome="already_paid",
                                transfer_id=transfer.transfer_id)
        logger.info("payout_transfer_succeeded", commission_id=commission_id, affiliate_id=affiliate.id,
                    transfer_id=transfer.transfer_id, amount=str(commission.commission_amount))
        return PayoutResult(commission_id=commission_id, outcome="paid", transfer_id=transfer.transfer_id)

    def _check_eligibility(self, commission: AffiliateCommission, *, force: bool) -> Optional[PayoutResult]:
        if commission.status == CommissionStatus.PAID or commission.has_successful_transfer:
            if force:
                raise CommissionAlreadyPaidException(commission.id)
            return PayoutResult(commission_id=commission.id, outcome="already_paid",
                                transfer_id=commission.transfer_id)
        if commission.status != CommissionStatus.APPROVED:
            if force:
                raise CommissionNotPayableException(commission.id, f"commission is {commission.status.value}")
            return PayoutResult(commission_id=commission.id, outcome="skipped",
                                error=f"commission is {commission.status.value}")
        if not commission.is_transfer_eligible(self._max_attempts, ignore_ceiling=force):
            return PayoutResult(commission_id=commission.id, outcome="skipped",
                                error="transfer attempt limit reached")
        return None

    def _check_integrity(self, commission: AffiliateCommission, order: Optional[Order], provider: str) -> None:
        """The commission must still describe a paid order it was derived from."""
        def fail(message: str) -> None:
            raise PayoutAttemptFailed(provider, "integrity_check", message)

        if order is None:
            fail("order not found")
        if not order.is_paid:
            fail(f"order is {order.status.value}")
        if order.affiliate_id != commission.affiliate_id:
            fail("order belongs to a different affiliate")
        if not amounts_match(order.total, commission.order_total):
            fail(f"order total {order.total} differs from commission base {commission.order_total}")
        if not amounts_match(commission.recomputed_amount(), commission.commission_amount):
            fail(f"commission amount {commission.commission_amount} does not match rate")

    async def _source_charge(self, gateway: PaymentGateway, order: Order) -> Optional[str]:
        # Only a charge on the same provider can fund the transfer
        if not gateway.requires_source_charge or order.provider != gateway.provider:
            return None
        if order.charge_ref:
            return order.charge_ref
        charge = None
        if order.provider_ref:
            charge = await gateway.resolve_charge_reference(order.provider_ref)
        if not charge:
            raise PayoutAttemptFailed(gateway.provider, "charge_unresolved",
                                      f"no charge found for order {order.id}")
        return charge

    async def _transfer(self, gateway: PaymentGateway, commission: AffiliateCommission, affiliate: Affiliate,
                        order: Order, amount_minor: int, source_charge: Optional[str]):
        request = TransferRequest(
            amount_minor=amount_minor,
            currency=commission.currency,
            destination=affiliate.payout_account_ref,
            idempotency_key=f"commission_payout_{commission.id}",
            source_charge=source_charge,
            transfer_group=f"order_{order.id}",
            description=f"Commission for order {order.id}",
            metadata={
                "commission_id": commission.id,
                "order_id": order.id,
                "affiliate_id": affiliate.id,
            },
        )
        try:
            return await asyncio.wait_for(gateway.transfer(request), timeout=self._transfer_timeout)
        except asyncio.TimeoutError:
            raise PayoutAttemptFailed(
                gateway.provider, "timeout",
                f"transfer did not finish within {self._transfer_timeout:g}s", retryable=True,
            )

    async def _record_failure(self, commission: AffiliateCommission, error: str, *, retryable: bool) -> PayoutResult:
        async with self._uow_factory() as uow:
            ledger = CommissionLedgerDomainService(uow.affiliate_repository, uow.commission_repository)
            await ledger.record_transfer_failure(commission.id, error, max_attempts=self._max_attempts)
        logger.warning("payout_transfer_failed", commission_id=commission.id, error=error, retryable=retryable,
                       attempt=commission.transfer_attempt_count + 1)
        return PayoutResult(commission_id=commission.id, outcome="failed", error=error, retryable=retryable)

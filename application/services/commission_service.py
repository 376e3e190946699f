"""
Commission application service - operator actions on commissions and the
transfer/account webhooks that update them.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from application.dtos.ledger import CommissionDTO
from application.dtos.payments import WebhookEvent
from application.ports.payment_gateway import PaymentGateway
from application.ports.task_dispatcher import LedgerTaskDispatcher
from application.services.event_publisher import publish_ledger_events
from domain.affiliate.entity import CommissionStatus
from domain.affiliate.service import CommissionLedgerDomainService
from domain.common.exceptions import CommissionNotFoundException, AffiliateNotFoundException
from domain.common.money import to_minor_units
from domain.common.unit_of_work import AbstractUnitOfWork
from core.logging_config import get_logger


logger = get_logger(__name__)


class CommissionApplicationService:
    """Commission application service"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_resolver: Optional[Callable[[str], PaymentGateway]] = None,
        dispatcher: Optional[LedgerTaskDispatcher] = None,
        *,
        max_attempts: int = 5,
    ):
        self._uow_factory = uow_factory
        self._resolve_gateway = gateway_resolver
        self._dispatcher = dispatcher
        self._max_attempts = max_attempts

    async def approve(self, commission_id: str) -> CommissionDTO:
        async with self._uow_factory() as uow:
            ledger = CommissionLedgerDomainService(uow.affiliate_repository, uow.commission_repository)
            commission = await ledger.approve(commission_id)
            events = ledger.clear_events()
        if events:
            logger.info("commission_approved", commission_id=commission_id)
        publish_ledger_events(self._dispatcher, events)
        return CommissionDTO.from_entity(commission)

    async def get_commission(self, commission_id: str) -> CommissionDTO:
        async with self._uow_factory(readonly=True) as uow:
            commission = await uow.commission_repository.get_by_id(commission_id)
        if commission is None:
            raise CommissionNotFoundException(commission_id)
        return CommissionDTO.from_entity(commission)

    async def list_requiring_attention(
        self, *, status: Optional[str] = None, limit: int = 100
    ) -> List[CommissionDTO]:
        """Commissions stuck at the attempt ceiling, failed, or cancelled after payout."""
        async with self._uow_factory(readonly=True) as uow:
            rows = await uow.commission_repository.list_requiring_attention(
                max_attempts=self._max_attempts,
                status=CommissionStatus(status) if status else None,
                limit=limit,
            )
        return [CommissionDTO.from_entity(c) for c in rows]

    async def handle_transfer_confirmed(self, event: WebhookEvent) -> bool:
        if not event.transfer_ref:
            return False
        async with self._uow_factory() as uow:
            ledger = CommissionLedgerDomainService(uow.affiliate_repository, uow.commission_repository)
            changed = await ledger.confirm_transfer(event.transfer_ref)
        logger.info("transfer_confirmed", transfer_id=event.transfer_ref, changed=changed)
        return changed

    async def handle_transfer_reversed(self, event: WebhookEvent) -> bool:
        """A reversed transfer puts the commission back in the payable set."""
        if not event.transfer_ref:
            return False
        async with self._uow_factory() as uow:
            ledger = CommissionLedgerDomainService(uow.affiliate_repository, uow.commission_repository)
            commission = await ledger.revert_transfer(
                event.transfer_ref, f"{event.provider} [transfer_reversed]: transfer reversed by provider"
            )
            events = ledger.clear_events()
        if commission is None:
            logger.info("transfer_reversal_ignored", transfer_id=event.transfer_ref)
            return False
        logger.warning("transfer_reversed", transfer_id=event.transfer_ref, commission_id=commission.id)
        publish_ledger_events(self._dispatcher, events)
        return True

    async def handle_account_updated(self, event: WebhookEvent) -> bool:
        if not event.account_ref:
            return False
        data = event.data or {}
        async with self._uow_factory() as uow:
            affiliate = await uow.affiliate_repository.get_by_account_ref(event.account_ref)
            if affiliate is None:
                logger.info("account_update_unmatched", account_ref=event.account_ref)
                return False
            await uow.affiliate_repository.update_capabilities(
                affiliate.id,
                charges_enabled=bool(data.get("charges_enabled")),
                payouts_enabled=bool(data.get("payouts_enabled")),
                details_submitted=bool(data.get("details_submitted")),
            )
        return True

    async def reverse_transfer(self, commission_id: str, transfer_id: str) -> Optional[str]:
        """Claw a paid-out commission back from the affiliate's connected account."""
        async with self._uow_factory(readonly=True) as uow:
            commission = await uow.commission_repository.get_by_id(commission_id)
            if commission is None:
                raise CommissionNotFoundException(commission_id)
            affiliate = await uow.affiliate_repository.get_by_id(commission.affiliate_id)
            if affiliate is None:
                raise AffiliateNotFoundException(commission.affiliate_id)
        gateway = self._resolve_gateway(affiliate.payout_provider)
        reversal_id = await gateway.reverse_transfer(
            transfer_id,
            amount_minor=to_minor_units(commission.commission_amount, commission.currency),
            idempotency_key=f"commission_reversal_{commission_id}",
        )
        logger.info("commission_transfer_clawed_back", commission_id=commission_id,
                    transfer_id=transfer_id, reversal_id=reversal_id)
        return reversal_id

"""
Order ledger application service - orchestrates order creation, provider
charges and the payment state machine.

Provider calls never run while a row lock is held: the charge is created
after the order row commits, and PayPal captures run before the completing
transaction opens.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from application.dtos.ledger import CreateOrder, OrderDTO
from application.dtos.payments import ChargeRequest, WebhookEvent
from application.ports.payment_gateway import PaymentGateway
from application.ports.task_dispatcher import LedgerTaskDispatcher
from application.services.event_publisher import publish_ledger_events
from domain.affiliate.service import CommissionLedgerDomainService
from domain.common.exceptions import AffiliateNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import OrderStatus, OrderTransition
from domain.order.service import OrderLedgerDomainService, TransitionOutcome
from core.logging_config import get_logger


logger = get_logger(__name__)

GatewayResolver = Callable[[str], PaymentGateway]


class OrderLedgerApplicationService:
    """Order ledger application service"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_resolver: GatewayResolver,
        dispatcher: Optional[LedgerTaskDispatcher] = None,
        *,
        auto_approve: bool = False,
        refund_policy: str = "hold",
    ):
        self._uow_factory = uow_factory
        self._resolve_gateway = gateway_resolver
        self._dispatcher = dispatcher
        self._auto_approve = auto_approve
        self._clawback = refund_policy == "clawback"

    async def initiate_order(self, data: CreateOrder) -> OrderDTO:
        """Persist a pending order, then open the provider charge for it."""
        async with self._uow_factory() as uow:
            affiliate_id = None
            if data.affiliate_code:
                affiliate = await uow.affiliate_repository.get_by_code(data.affiliate_code)
                if affiliate is None:
                    raise AffiliateNotFoundException(data.affiliate_code)
                if affiliate.is_active:
                    affiliate_id = affiliate.id
                else:
                    logger.info("order_affiliate_inactive", affiliate_code=data.affiliate_code)
            orders = OrderLedgerDomainService(uow.order_repository, uow.coupon_repository)
            order = await orders.create_order(
                email=str(data.email),
                currency=data.currency,
                provider=data.provider,
                items=[item.model_dump() for item in data.items],
                coupon_code=data.coupon_code,
                user_id=data.user_id,
                affiliate_id=affiliate_id,
            )

        if order.total <= 0:
            # fully discounted: nothing to charge
            outcome = await self._transition(OrderTransition.COMPLETE, order_id=order.id)
            return OrderDTO.from_entity(outcome.order)

        gateway = self._resolve_gateway(order.provider)
        charge = await gateway.create_charge(ChargeRequest(
            order_id=order.id,
            amount=order.total,
            currency=order.currency,
            email=order.email,
            description=f"Order {order.id}",
            return_url=data.return_url,
            cancel_url=data.cancel_url,
            idempotency_key=f"order_charge_{order.id}",
            metadata={"order_id": order.id},
        ))
        async with self._uow_factory() as uow:
            await uow.order_repository.set_provider_ref(order.id, charge.provider_ref)
        order.provider_ref = charge.provider_ref
        logger.info("order_charge_opened", order_id=order.id, provider=order.provider,
                    provider_ref=charge.provider_ref)
        return OrderDTO.from_entity(order, client_params=charge.client_params)

    async def get_order(self, order_id: str) -> OrderDTO:
        async with self._uow_factory(readonly=True) as uow:
            orders = OrderLedgerDomainService(uow.order_repository, uow.coupon_repository)
            return OrderDTO.from_entity(await orders.locate(order_id=order_id))

    async def complete_payment(self, event: WebhookEvent) -> TransitionOutcome:
        return await self._transition(
            OrderTransition.COMPLETE,
            order_id=event.order_id,
            provider=event.provider,
            provider_ref=event.provider_ref,
            charge_ref=event.charge_ref,
            reported_amount=event.amount,
        )

    async def fail_payment(self, event: WebhookEvent) -> TransitionOutcome:
        return await self._transition(
            OrderTransition.FAIL,
            order_id=event.order_id,
            provider=event.provider,
            provider_ref=event.provider_ref,
        )

    async def cancel_payment(self, event: WebhookEvent) -> TransitionOutcome:
        return await self._transition(
            OrderTransition.CANCEL,
            order_id=event.order_id,
            provider=event.provider,
            provider_ref=event.provider_ref,
        )

    async def refund_payment(self, event: WebhookEvent) -> TransitionOutcome:
        return await self._transition(
            OrderTransition.REFUND,
            order_id=event.order_id,
            provider=event.provider,
            provider_ref=event.provider_ref,
        )

    async def handle_order_approved(self, event: WebhookEvent) -> TransitionOutcome:
        """Buyer approved a PayPal order: capture it, then complete the order."""
        async with self._uow_factory(readonly=True) as uow:
            orders = OrderLedgerDomainService(uow.order_repository, uow.coupon_repository)
            order = await orders.locate(
                order_id=event.order_id, provider=event.provider, provider_ref=event.provider_ref
            )
        if order.status != OrderStatus.PENDING:
            reason = "already_applied" if order.is_paid else "illegal"
            logger.info("order_capture_skipped", order_id=order.id, status=order.status.value)
            return TransitionOutcome(order, OrderTransition.COMPLETE, False, reason)

        gateway = self._resolve_gateway(order.provider)
        capture = await gateway.capture(
            order.provider_ref or event.provider_ref,
            idempotency_key=f"order_capture_{order.id}",
        )
        if not capture.completed:
            logger.info("order_capture_pending", order_id=order.id, status=capture.status)
            return TransitionOutcome(order, OrderTransition.COMPLETE, False, "pending")
        return await self._transition(
            OrderTransition.COMPLETE,
            order_id=order.id,
            charge_ref=capture.charge_ref,
            reported_amount=capture.amount,
        )

    async def _transition(
        self,
        transition: OrderTransition,
        *,
        order_id: Optional[str] = None,
        provider: Optional[str] = None,
        provider_ref: Optional[str] = None,
        charge_ref: Optional[str] = None,
        reported_amount=None,
    ) -> TransitionOutcome:
        events: List = []
        async with self._uow_factory() as uow:
            orders = OrderLedgerDomainService(uow.order_repository, uow.coupon_repository)
            order = await orders.locate(
                order_id=order_id, provider=provider, provider_ref=provider_ref, for_update=True
            )
            outcome = await orders.apply_transition(
                order, transition, charge_ref=charge_ref, reported_amount=reported_amount
            )
            if outcome.applied:
                commissions = CommissionLedgerDomainService(
                    uow.affiliate_repository, uow.commission_repository
                )
                if transition is OrderTransition.COMPLETE:
                    creation = await commissions.create_for_paid_order(outcome.order)
                    if creation.reason == "created" and self._auto_approve:
                        await commissions.approve(creation.commission.id)
                    elif creation.reason not in ("created", "no_affiliate"):
                        logger.info("commission_not_created", order_id=order.id, reason=creation.reason)
                elif transition is OrderTransition.REFUND:
                    await commissions.cancel_for_order(order.id, clawback=self._clawback)
                events = orders.clear_events() + commissions.clear_events()

        if outcome.reason == "illegal":
            logger.warning("order_transition_illegal", order_id=outcome.order.id,
                           status=outcome.order.status.value, transition=transition.value)
        elif not outcome.applied:
            logger.info("order_transition_noop", order_id=outcome.order.id, transition=transition.value)
        publish_ledger_events(self._dispatcher, events)
        return outcome

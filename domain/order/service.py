"""
订单账本领域服务 - 执行状态机流转及其关联的优惠券副作用
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .entity import (
    Order,
    OrderTransition,
    ORDER_TRANSITIONS,
    CouponRedemption,
    new_id,
)
from .events import OrderPaid, OrderCancelled, OrderRefunded
from .repository import OrderRepository, CouponRepository
from domain.common.exceptions import (
    OrderNotFoundException,
    OrderAmountMismatchException,
    IllegalOrderTransitionException,
    CouponNotRedeemableException,
)
from domain.common.money import amounts_match


@dataclass
class TransitionOutcome:
    order: Order
    transition: OrderTransition
    applied: bool
    # applied | already_applied | illegal
    reason: str


class OrderLedgerDomainService:
    """
    订单账本领域服务

    职责：
    1. 创建订单（优惠券折扣与明细快照）
    2. 受保护的状态流转（先校验，再条件更新）
    3. 优惠券使用计数与使用记录
    4. 收集领域事件
    """

    def __init__(self, order_repository: OrderRepository, coupon_repository: CouponRepository):
        self.order_repository = order_repository
        self.coupon_repository = coupon_repository
        self.events: List = []

    async def create_order(
        self,
        *,
        email: str,
        currency: str,
        provider: str,
        items: list[dict],
        coupon_code: Optional[str] = None,
        user_id: Optional[str] = None,
        affiliate_id: Optional[str] = None,
    ) -> Order:
        coupon = None
        if coupon_code:
            coupon = await self.coupon_repository.get_by_code(coupon_code)
            if coupon is None:
                raise CouponNotRedeemableException(coupon_code, "unknown code")
            coupon.ensure_redeemable()

        order = Order.create(
            email=email,
            currency=currency,
            provider=provider,
            items=items,
            coupon=coupon,
            user_id=user_id,
            affiliate_id=affiliate_id,
        )
        return await self.order_repository.create(order)

    async def locate(
        self,
        *,
        order_id: Optional[str] = None,
        provider: Optional[str] = None,
        provider_ref: Optional[str] = None,
        for_update: bool = False,
    ) -> Order:
        order = None
        if order_id:
            order = await self.order_repository.get_by_id(order_id, for_update=for_update)
        if order is None and provider and provider_ref:
            order = await self.order_repository.get_by_provider_ref(
                provider, provider_ref, for_update=for_update
            )
        if order is None:
            raise OrderNotFoundException(order_id, provider=provider, provider_ref=provider_ref)
        return order

    async def apply_transition(
        self,
        order: Order,
        transition: OrderTransition,
        *,
        charge_ref: Optional[str] = None,
        reported_amount: Optional[Decimal] = None,
    ) -> TransitionOutcome:
        """
        对加了行锁的订单执行状态流转

        先做实体校验；条件更新在同一事务内再次校验源状态，
        并发写入方已推进订单时本次调用成为空操作
        """
        try:
            if not order.can_apply(transition):
                return TransitionOutcome(order, transition, False, "already_applied")
        except IllegalOrderTransitionException:
            return TransitionOutcome(order, transition, False, "illegal")

        if (
            transition is OrderTransition.COMPLETE
            and reported_amount is not None
            and not amounts_match(reported_amount, order.total)
        ):
            raise OrderAmountMismatchException(order.id, order.total, reported_amount)

        rule = ORDER_TRANSITIONS[transition]
        now = datetime.now(timezone.utc)
        changed = await self.order_repository.transition(
            order.id,
            sources=rule.sources,
            status=rule.target,
            payment_status=rule.target_payment,
            at=now,
            paid_at=now if transition is OrderTransition.COMPLETE else None,
            charge_ref=charge_ref,
        )
        if not changed:
            return TransitionOutcome(order, transition, False, "already_applied")

        order.apply(transition, at=now)
        if charge_ref:
            order.charge_ref = charge_ref

        if transition is OrderTransition.COMPLETE:
            await self._redeem_coupon(order)
            self.events.append(OrderPaid(
                order_id=order.id,
                provider=order.provider,
                provider_ref=order.provider_ref,
                email=order.email,
                total=str(order.total),
                currency=order.currency,
            ))
        elif transition is OrderTransition.REFUND:
            await self._release_coupon(order)
            self.events.append(OrderRefunded(
                order_id=order.id,
                provider=order.provider,
                provider_ref=order.provider_ref,
            ))
        else:
            self.events.append(OrderCancelled(
                order_id=order.id,
                provider=order.provider,
                provider_ref=order.provider_ref,
                payment_status=order.payment_status.value,
            ))
        return TransitionOutcome(order, transition, True, "applied")

    async def _redeem_coupon(self, order: Order) -> None:
        if not order.coupon_code:
            return
        coupon = await self.coupon_repository.get_by_code(order.coupon_code)
        if coupon is None:
            return
        if await self.coupon_repository.get_redemption_for_order(order.id) is not None:
            return
        await self.coupon_repository.increment_usage(coupon.id)
        await self.coupon_repository.add_redemption(CouponRedemption(
            id=new_id(),
            coupon_id=coupon.id,
            order_id=order.id,
            amount_discounted=abs(order.discount_amount),
            email=order.email,
            user_id=order.user_id,
            redeemed_at=order.paid_at,
        ))

    async def _release_coupon(self, order: Order) -> None:
        # 使用记录保留作为审计
        if not order.coupon_code:
            return
        coupon = await self.coupon_repository.get_by_code(order.coupon_code)
        if coupon is not None:
            await self.coupon_repository.decrement_usage(coupon.id)

    def clear_events(self) -> List:
        events = self.events.copy()
        self.events.clear()
        return events

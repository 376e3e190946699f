"""
订单账本仓储 - SQLAlchemy 实现
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.exceptions import CouponNotRedeemableException
from domain.order.entity import (
    Order,
    OrderItem,
    OrderStatus,
    OrderPaymentStatus,
    Coupon,
    CouponRedemption,
    DiscountType,
)
from domain.order.repository import OrderRepository, CouponRepository
from infrastructure.models.order import (
    OrderModel,
    OrderItemModel,
    CouponModel,
    CouponRedemptionModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的 SQLAlchemy 实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel, items: Optional[List[OrderItemModel]] = None) -> Order:
        return Order(
            id=model.id,
            email=model.email,
            user_id=model.user_id,
            subtotal=model.subtotal,
            discount_amount=model.discount_amount,
            total=model.total,
            currency=model.currency,
            provider=model.provider,
            status=OrderStatus(model.status),
            payment_status=OrderPaymentStatus(model.payment_status),
            provider_ref=model.provider_ref,
            charge_ref=model.charge_ref,
            coupon_code=model.coupon_code,
            affiliate_id=model.affiliate_id,
            paid_at=model.paid_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
            items=[
                OrderItem(
                    id=item.id,
                    order_id=item.order_id,
                    product_id=item.product_id,
                    variation_id=item.variation_id,
                    name=item.name,
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                )
                for item in (items or [])
            ],
        )

    def _to_model(self, entity: Order) -> OrderModel:
        return OrderModel(
            id=entity.id,
            email=entity.email,
            user_id=entity.user_id,
            subtotal=entity.subtotal,
            discount_amount=entity.discount_amount,
            total=entity.total,
            currency=entity.currency,
            provider=entity.provider,
            status=entity.status.value,
            payment_status=entity.payment_status.value,
            provider_ref=entity.provider_ref,
            charge_ref=entity.charge_ref,
            coupon_code=entity.coupon_code,
            affiliate_id=entity.affiliate_id,
            paid_at=entity.paid_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def _load_items(self, order_id: str) -> List[OrderItemModel]:
        result = await self.session.execute(
            select(OrderItemModel).where(OrderItemModel.order_id == order_id)
        )
        return list(result.scalars().all())

    async def create(self, order: Order) -> Order:
        db_order = self._to_model(order)
        self.session.add(db_order)
        # 先写订单，明细的外键才能关联上
        await self.session.flush()
        for item in order.items:
            self.session.add(OrderItemModel(
                id=item.id,
                order_id=order.id,
                product_id=item.product_id,
                variation_id=item.variation_id,
                name=item.name,
                unit_price=item.unit_price,
                quantity=item.quantity,
            ))
        await self.session.flush()
        await self.session.refresh(db_order)
        logger.info("order_created", order_id=order.id, total=str(order.total), provider=order.provider)
        return self._to_entity(db_order, await self._load_items(order.id))

    async def get_by_id(self, order_id: str, *, for_update: bool = False) -> Optional[Order]:
        stmt = select(OrderModel).where(OrderModel.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        db_order = result.scalar_one_or_none()
        if db_order is None:
            return None
        return self._to_entity(db_order, await self._load_items(db_order.id))

    async def get_by_provider_ref(
        self, provider: str, provider_ref: str, *, for_update: bool = False
    ) -> Optional[Order]:
        stmt = select(OrderModel).where(
            OrderModel.provider == provider,
            OrderModel.provider_ref == provider_ref,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        db_order = result.scalar_one_or_none()
        if db_order is None:
            return None
        return self._to_entity(db_order, await self._load_items(db_order.id))

    async def set_provider_ref(self, order_id: str, provider_ref: str) -> None:
        await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id)
            .values(provider_ref=provider_ref)
            .execution_options(synchronize_session=False)
        )

    async def transition(
        self,
        order_id: str,
        *,
        sources: Iterable[OrderStatus],
        status: OrderStatus,
        payment_status: OrderPaymentStatus,
        at: datetime,
        paid_at: Optional[datetime] = None,
        charge_ref: Optional[str] = None,
    ) -> bool:
        values = {
            "status": status.value,
            "payment_status": payment_status.value,
            "updated_at": at,
        }
        if paid_at is not None:
            values["paid_at"] = paid_at
        if charge_ref:
            values["charge_ref"] = charge_ref
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.id == order_id,
                OrderModel.status.in_([s.value for s in sources]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.info("order_transition_applied", order_id=order_id, status=status.value,
                        payment_status=payment_status.value)
        return changed


class SQLAlchemyCouponRepository(CouponRepository):
    """优惠券仓储的 SQLAlchemy 实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: CouponModel) -> Coupon:
        return Coupon(
            id=model.id,
            code=model.code,
            discount_type=DiscountType(model.discount_type),
            value=model.value,
            used_count=model.used_count,
            max_uses=model.max_uses,
            is_active=model.is_active,
        )

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.session.execute(select(CouponModel).where(CouponModel.code == code))
        db_coupon = result.scalar_one_or_none()
        return self._to_entity(db_coupon) if db_coupon else None

    async def increment_usage(self, coupon_id: str) -> None:
        await self.session.execute(
            update(CouponModel)
            .where(CouponModel.id == coupon_id)
            .values(used_count=CouponModel.used_count + 1)
            .execution_options(synchronize_session=False)
        )

    async def decrement_usage(self, coupon_id: str) -> None:
        await self.session.execute(
            update(CouponModel)
            .where(CouponModel.id == coupon_id)
            .values(used_count=case((CouponModel.used_count > 0, CouponModel.used_count - 1), else_=0))
            .execution_options(synchronize_session=False)
        )

    async def add_redemption(self, redemption: CouponRedemption) -> CouponRedemption:
        try:
            self.session.add(CouponRedemptionModel(
                id=redemption.id,
                coupon_id=redemption.coupon_id,
                order_id=redemption.order_id,
                amount_discounted=redemption.amount_discounted,
                email=redemption.email,
                user_id=redemption.user_id,
                redeemed_at=redemption.redeemed_at,
            ))
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.warning("coupon_redemption_conflict", order_id=redemption.order_id)
            raise CouponNotRedeemableException(redemption.coupon_id, "already redeemed for this order")
        return redemption

    async def get_redemption_for_order(self, order_id: str) -> Optional[CouponRedemption]:
        result = await self.session.execute(
            select(CouponRedemptionModel).where(CouponRedemptionModel.order_id == order_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return CouponRedemption(
            id=model.id,
            coupon_id=model.coupon_id,
            order_id=model.order_id,
            amount_discounted=model.amount_discounted,
            email=model.email,
            user_id=model.user_id,
            redeemed_at=model.redeemed_at,
        )

"""
订单账本仓储接口

计数器与状态变更都定义为原子操作，实现可用单条语句完成
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Iterable

from .entity import Order, OrderStatus, OrderPaymentStatus, Coupon, CouponRedemption


class OrderRepository(ABC):

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """保存订单及其明细"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: str, *, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_provider_ref(
        self, provider: str, provider_ref: str, *, for_update: bool = False
    ) -> Optional[Order]:
        pass

    @abstractmethod
    async def set_provider_ref(self, order_id: str, provider_ref: str) -> None:
        pass

    @abstractmethod
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
        """条件更新订单状态；没有行匹配源状态时返回 False"""
        pass


class CouponRepository(ABC):

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def increment_usage(self, coupon_id: str) -> None:
        pass

    @abstractmethod
    async def decrement_usage(self, coupon_id: str) -> None:
        """used_count 减一，最小为零"""
        pass

    @abstractmethod
    async def add_redemption(self, redemption: CouponRedemption) -> CouponRedemption:
        pass

    @abstractmethod
    async def get_redemption_for_order(self, order_id: str) -> Optional[CouponRedemption]:
        pass

"""Unit of Work 抽象"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Protocol

from domain.order.repository import OrderRepository, CouponRepository
from domain.affiliate.repository import AffiliateRepository, CommissionRepository


class WebhookEventRepository(Protocol):
    """已处理 webhook 事件表，数据库幂等守卫的存储"""

    async def exists(self, event_key: str, now: datetime) -> bool: ...

    async def claim(self, event_key: str, provider: str, *, now: datetime, expires_at: datetime) -> None: ...

    async def release(self, event_key: str) -> None: ...

    async def purge_expired(self, now: datetime) -> int: ...


class AbstractUnitOfWork(ABC):
    """应用服务使用的事务边界"""

    order_repository: OrderRepository
    coupon_repository: CouponRepository
    affiliate_repository: AffiliateRepository
    commission_repository: CommissionRepository
    webhook_event_repository: WebhookEventRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.order_repository = None  # type: ignore[assignment]
        self.coupon_repository = None  # type: ignore[assignment]
        self.affiliate_repository = None  # type: ignore[assignment]
        self.commission_repository = None  # type: ignore[assignment]
        self.webhook_event_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 仅对未显式提交的可写单元自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...

    @property
    def readonly(self) -> bool:
        return self._readonly

    @property
    def committed(self) -> bool:
        return self._committed

    def mark_committed(self, value: Optional[bool] = True) -> None:
        self._committed = bool(value)

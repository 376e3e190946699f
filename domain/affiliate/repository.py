"""
推广者/佣金仓储接口

聚合计数只能通过这里声明的原子操作修改，实现中不得先读后写
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from .entity import Affiliate, AffiliateCommission, CommissionStatus


class AffiliateRepository(ABC):

    @abstractmethod
    async def create(self, affiliate: Affiliate) -> Affiliate:
        pass

    @abstractmethod
    async def get_by_id(self, affiliate_id: str) -> Optional[Affiliate]:
        pass

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Affiliate]:
        pass

    @abstractmethod
    async def get_by_account_ref(self, account_ref: str) -> Optional[Affiliate]:
        pass

    @abstractmethod
    async def list_payout_candidates(self) -> List[Affiliate]:
        """已配置收款账户的活跃推广者（无论是否开启自动打款）"""
        pass

    @abstractmethod
    async def update_capabilities(
        self,
        affiliate_id: str,
        *,
        charges_enabled: bool,
        payouts_enabled: bool,
        details_submitted: bool,
    ) -> None:
        pass

    @abstractmethod
    async def add_earnings(self, affiliate_id: str, *, revenue: Decimal, commission: Decimal) -> None:
        """total_orders + 1，total_revenue/total_commission/pending_commission 累加金额"""
        pass

    @abstractmethod
    async def release_pending(self, affiliate_id: str, amount: Decimal) -> None:
        """pending_commission 减去金额，最小为零"""
        pass

    @abstractmethod
    async def record_payout(self, affiliate_id: str, amount: Decimal, at: datetime) -> None:
        """金额从 pending（最小为零）转入 paid，并累加 total_paid_out"""
        pass

    @abstractmethod
    async def reverse_payout(self, affiliate_id: str, amount: Decimal, *, restore_pending: bool) -> None:
        """paid_commission/total_paid_out 减去金额（最小为零）；可选退回 pending"""
        pass


class CommissionRepository(ABC):

    @abstractmethod
    async def create(self, commission: AffiliateCommission) -> AffiliateCommission:
        pass

    @abstractmethod
    async def get_by_id(self, commission_id: str, *, for_update: bool = False) -> Optional[AffiliateCommission]:
        pass

    @abstractmethod
    async def get_by_affiliate_and_order(self, affiliate_id: str, order_id: str) -> Optional[AffiliateCommission]:
        pass

    @abstractmethod
    async def get_by_transfer_id(self, transfer_id: str) -> Optional[AffiliateCommission]:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[AffiliateCommission]:
        pass

    @abstractmethod
    async def list_payable(self, affiliate_id: str, *, max_attempts: int, limit: int = 50) -> List[AffiliateCommission]:
        """已审核、尚无成功转账且重试次数未达上限"""
        pass

    @abstractmethod
    async def list_requiring_attention(
        self, *, max_attempts: int, status: Optional[CommissionStatus] = None, limit: int = 100
    ) -> List[AffiliateCommission]:
        pass

    @abstractmethod
    async def approve(self, commission_id: str, at: datetime) -> bool:
        pass

    @abstractmethod
    async def cancel(
        self, commission_id: str, *, from_statuses: Iterable[CommissionStatus], note: str, at: datetime
    ) -> bool:
        pass

    @abstractmethod
    async def mark_transfer_succeeded(self, commission_id: str, transfer_id: str, at: datetime) -> bool:
        pass

    @abstractmethod
    async def attach_late_transfer(self, commission_id: str, transfer_id: str, note: str, at: datetime) -> bool:
        """记录佣金取消后才到账的转账"""
        pass

    @abstractmethod
    async def mark_transfer_failed(self, commission_id: str, error: str, at: datetime, *, max_attempts: int) -> bool:
        pass

    @abstractmethod
    async def mark_transfer_confirmed(self, transfer_id: str) -> bool:
        pass

    @abstractmethod
    async def revert_transfer(self, commission_id: str, transfer_id: str, error: str, at: datetime) -> bool:
        pass

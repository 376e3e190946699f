"""
佣金账本领域服务 - 根据已支付订单生成佣金，
并保证推广者聚合统计与每次佣金变更同步
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from .entity import (
    AffiliateCommission,
    CommissionStatus,
    UNPAID_STATUSES,
)
from .events import (
    CommissionCreated,
    CommissionApproved,
    CommissionPaid,
    CommissionCancelled,
    CommissionTransferReversed,
)
from .repository import AffiliateRepository, CommissionRepository
from domain.common.exceptions import (
    CommissionNotFoundException,
    CommissionNotPayableException,
)
from domain.order.entity import Order, new_id


@dataclass
class CommissionCreation:
    commission: Optional[AffiliateCommission]
    # created | duplicate | no_affiliate | affiliate_missing | affiliate_inactive | order_not_paid
    reason: str


class CommissionLedgerDomainService:
    """
    佣金账本领域服务

    每个修改佣金行的方法都会同时应用对应的推广者聚合增量，
    两者都在调用方的事务中完成
    """

    def __init__(self, affiliate_repository: AffiliateRepository, commission_repository: CommissionRepository):
        self.affiliate_repository = affiliate_repository
        self.commission_repository = commission_repository
        self.events: List = []

    async def create_for_paid_order(self, order: Order) -> CommissionCreation:
        """
        为已完成/已支付的订单创建佣金

        可重复调用：(affiliate, order) 已存在时为空操作
        """
        if not order.affiliate_id:
            return CommissionCreation(None, "no_affiliate")
        if not order.is_paid:
            return CommissionCreation(None, "order_not_paid")

        affiliate = await self.affiliate_repository.get_by_id(order.affiliate_id)
        if affiliate is None:
            return CommissionCreation(None, "affiliate_missing")
        if not affiliate.is_active:
            return CommissionCreation(None, "affiliate_inactive")

        existing = await self.commission_repository.get_by_affiliate_and_order(affiliate.id, order.id)
        if existing is not None:
            return CommissionCreation(existing, "duplicate")

        now = datetime.now(timezone.utc)
        commission = await self.commission_repository.create(AffiliateCommission(
            id=new_id(),
            affiliate_id=affiliate.id,
            order_id=order.id,
            order_total=order.total,
            commission_type=affiliate.commission_type,
            commission_rate=affiliate.commission_value,
            commission_amount=affiliate.commission_for(order.total),
            currency=order.currency,
            status=CommissionStatus.PENDING,
            created_at=now,
            updated_at=now,
        ))
        await self.affiliate_repository.add_earnings(
            affiliate.id, revenue=order.total, commission=commission.commission_amount
        )
        self.events.append(CommissionCreated(
            commission_id=commission.id,
            affiliate_id=affiliate.id,
            order_id=order.id,
            amount=str(commission.commission_amount),
        ))
        return CommissionCreation(commission, "created")

    async def approve(self, commission_id: str) -> AffiliateCommission:
        commission = await self._get(commission_id, for_update=True)
        if commission.status == CommissionStatus.APPROVED:
            return commission
        if commission.status != CommissionStatus.PENDING:
            raise CommissionNotPayableException(commission_id, f"cannot approve a {commission.status.value} commission")
        now = datetime.now(timezone.utc)
        if await self.commission_repository.approve(commission_id, now):
            commission.status = CommissionStatus.APPROVED
            commission.approved_at = now
            affiliate = await self.affiliate_repository.get_by_id(commission.affiliate_id)
            self.events.append(CommissionApproved(
                commission_id=commission.id,
                affiliate_id=commission.affiliate_id,
                order_id=commission.order_id,
                amount=str(commission.commission_amount),
                auto_payout=bool(
                    affiliate and affiliate.payout_automation_enabled and affiliate.is_payout_eligible
                ),
            ))
        return commission

    async def cancel_for_order(self, order_id: str, *, clawback: bool) -> List[AffiliateCommission]:
        """
        取消已退款订单的佣金

        未支付的佣金从 pending_commission 中扣除（最小为零）；
        已支付的佣金取消并记录备注，开启追回时同时从 paid_commission/total_paid_out 中扣除
        """
        cancelled: List[AffiliateCommission] = []
        now = datetime.now(timezone.utc)
        for commission in await self.commission_repository.list_by_order(order_id):
            amount = commission.commission_amount
            if commission.status in UNPAID_STATUSES:
                changed = await self.commission_repository.cancel(
                    commission.id, from_statuses=UNPAID_STATUSES, note="order refunded", at=now
                )
                if changed:
                    await self.affiliate_repository.release_pending(commission.affiliate_id, amount)
            elif commission.status == CommissionStatus.PAID:
                note = "order refunded after payout; " + ("paid amount clawed back" if clawback else "held for operator review")
                changed = await self.commission_repository.cancel(
                    commission.id, from_statuses=(CommissionStatus.PAID,), note=note, at=now
                )
                if changed and clawback:
                    await self.affiliate_repository.reverse_payout(
                        commission.affiliate_id, amount, restore_pending=False
                    )
            else:
                continue
            if not changed:
                continue
            was_paid = commission.status == CommissionStatus.PAID
            commission.status = CommissionStatus.CANCELLED
            cancelled.append(commission)
            self.events.append(CommissionCancelled(
                commission_id=commission.id,
                affiliate_id=commission.affiliate_id,
                order_id=order_id,
                amount=str(amount),
                was_paid=was_paid,
                clawback=was_paid and clawback,
                transfer_id=commission.transfer_id,
            ))
        return cancelled

    async def record_transfer_success(self, commission: AffiliateCommission, transfer_id: str) -> bool:
        """其他尝试已记录该笔打款时返回 False"""
        now = datetime.now(timezone.utc)
        changed = await self.commission_repository.mark_transfer_succeeded(commission.id, transfer_id, now)
        if not changed:
            return False
        await self.affiliate_repository.record_payout(commission.affiliate_id, commission.commission_amount, now)
        self.events.append(CommissionPaid(
            commission_id=commission.id,
            affiliate_id=commission.affiliate_id,
            order_id=commission.order_id,
            amount=str(commission.commission_amount),
            transfer_id=transfer_id,
        ))
        return True

    async def record_transfer_after_cancel(
        self, commission: AffiliateCommission, transfer_id: str, *, clawback: bool
    ) -> bool:
        """
        转账进行中佣金被取消

        聚合统计不变（金额从未计入 paid_commission）；保留转账ID使其出现在待处理列表中，
        开启追回时与其他退款打款一样撤销该笔转账
        """
        note = "order refunded while transfer was in flight; " + (
            "paid amount clawed back" if clawback else "held for operator review"
        )
        changed = await self.commission_repository.attach_late_transfer(
            commission.id, transfer_id, note, datetime.now(timezone.utc)
        )
        if changed:
            self.events.append(CommissionCancelled(
                commission_id=commission.id,
                affiliate_id=commission.affiliate_id,
                order_id=commission.order_id,
                amount=str(commission.commission_amount),
                was_paid=True,
                clawback=clawback,
                transfer_id=transfer_id,
            ))
        return changed

    async def record_transfer_failure(self, commission_id: str, error: str, *, max_attempts: int) -> bool:
        return await self.commission_repository.mark_transfer_failed(
            commission_id, error[:1000], datetime.now(timezone.utc), max_attempts=max_attempts
        )

    async def confirm_transfer(self, transfer_id: str) -> bool:
        return await self.commission_repository.mark_transfer_confirmed(transfer_id)

    async def revert_transfer(self, transfer_id: str, reason: str) -> Optional[AffiliateCommission]:
        """支付渠道撤销了转账：佣金恢复为可打款"""
        commission = await self.commission_repository.get_by_transfer_id(transfer_id)
        if commission is None:
            return None
        changed = await self.commission_repository.revert_transfer(
            commission.id, transfer_id, reason, datetime.now(timezone.utc)
        )
        if not changed:
            return None
        await self.affiliate_repository.reverse_payout(
            commission.affiliate_id, commission.commission_amount, restore_pending=True
        )
        self.events.append(CommissionTransferReversed(
            commission_id=commission.id,
            affiliate_id=commission.affiliate_id,
            order_id=commission.order_id,
            amount=str(commission.commission_amount),
            transfer_id=transfer_id,
        ))
        return await self.commission_repository.get_by_id(commission.id)

    async def _get(self, commission_id: str, *, for_update: bool = False) -> AffiliateCommission:
        commission = await self.commission_repository.get_by_id(commission_id, for_update=for_update)
        if commission is None:
            raise CommissionNotFoundException(commission_id)
        return commission

    def clear_events(self) -> List:
        events = self.events.copy()
        self.events.clear()
        return events

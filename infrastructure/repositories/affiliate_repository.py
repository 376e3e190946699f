"""
推广者/佣金仓储 - SQLAlchemy 实现

聚合字段用基于列表达式的单条 UPDATE 语句修改，不做先读后写
"""
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select, update, case, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.affiliate.entity import (
    Affiliate,
    AffiliateCommission,
    AffiliateStatus,
    CommissionStatus,
    CommissionType,
    TransferStatus,
)
from domain.affiliate.repository import AffiliateRepository, CommissionRepository
from infrastructure.models.affiliate import AffiliateModel, AffiliateCommissionModel
from core.logging_config import get_logger


logger = get_logger(__name__)


def _floored_sub(column, amount: Decimal):
    """column - amount，不低于零"""
    return case((column - amount < 0, 0), else_=column - amount)


class SQLAlchemyAffiliateRepository(AffiliateRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: AffiliateModel) -> Affiliate:
        return Affiliate(
            id=model.id,
            code=model.code,
            name=model.name,
            email=model.email,
            commission_type=CommissionType(model.commission_type),
            commission_value=model.commission_value,
            status=AffiliateStatus(model.status),
            total_orders=model.total_orders,
            total_revenue=model.total_revenue,
            total_commission=model.total_commission,
            pending_commission=model.pending_commission,
            paid_commission=model.paid_commission,
            total_paid_out=model.total_paid_out,
            payout_provider=model.payout_provider,
            payout_account_ref=model.payout_account_ref,
            payout_enabled=model.payout_enabled,
            charges_enabled=model.charges_enabled,
            details_submitted=model.details_submitted,
            payout_automation_enabled=model.payout_automation_enabled,
            last_payout_at=model.last_payout_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Affiliate) -> AffiliateModel:
        return AffiliateModel(
            id=entity.id,
            code=entity.code,
            name=entity.name,
            email=entity.email,
            commission_type=entity.commission_type.value,
            commission_value=entity.commission_value,
            status=entity.status.value,
            total_orders=entity.total_orders,
            total_revenue=entity.total_revenue,
            total_commission=entity.total_commission,
            pending_commission=entity.pending_commission,
            paid_commission=entity.paid_commission,
            total_paid_out=entity.total_paid_out,
            payout_provider=entity.payout_provider,
            payout_account_ref=entity.payout_account_ref,
            payout_enabled=entity.payout_enabled,
            charges_enabled=entity.charges_enabled,
            details_submitted=entity.details_submitted,
            payout_automation_enabled=entity.payout_automation_enabled,
            last_payout_at=entity.last_payout_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def _update(self, affiliate_id: str, **values) -> None:
        await self.session.execute(
            update(AffiliateModel)
            .where(AffiliateModel.id == affiliate_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def create(self, affiliate: Affiliate) -> Affiliate:
        db_affiliate = self._to_model(affiliate)
        self.session.add(db_affiliate)
        await self.session.flush()
        await self.session.refresh(db_affiliate)
        return self._to_entity(db_affiliate)

    async def get_by_id(self, affiliate_id: str) -> Optional[Affiliate]:
        result = await self.session.execute(select(AffiliateModel).where(AffiliateModel.id == affiliate_id))
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_code(self, code: str) -> Optional[Affiliate]:
        result = await self.session.execute(select(AffiliateModel).where(AffiliateModel.code == code))
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_account_ref(self, account_ref: str) -> Optional[Affiliate]:
        result = await self.session.execute(
            select(AffiliateModel).where(AffiliateModel.payout_account_ref == account_ref)
        )
        model = result.scalars().first()
        return self._to_entity(model) if model else None

    async def list_payout_candidates(self) -> List[Affiliate]:
        result = await self.session.execute(
            select(AffiliateModel)
            .where(
                AffiliateModel.status == AffiliateStatus.ACTIVE.value,
                AffiliateModel.payout_account_ref.is_not(None),
            )
            .order_by(AffiliateModel.created_at, AffiliateModel.id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update_capabilities(
        self,
        affiliate_id: str,
        *,
        charges_enabled: bool,
        payouts_enabled: bool,
        details_submitted: bool,
    ) -> None:
        await self._update(
            affiliate_id,
            charges_enabled=charges_enabled,
            details_submitted=details_submitted,
            payout_enabled=charges_enabled and payouts_enabled,
        )
        logger.info(
            "affiliate_capabilities_updated",
            affiliate_id=affiliate_id,
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
        )

    async def add_earnings(self, affiliate_id: str, *, revenue: Decimal, commission: Decimal) -> None:
        await self._update(
            affiliate_id,
            total_orders=AffiliateModel.total_orders + 1,
            total_revenue=AffiliateModel.total_revenue + revenue,
            total_commission=AffiliateModel.total_commission + commission,
            pending_commission=AffiliateModel.pending_commission + commission,
        )

    async def release_pending(self, affiliate_id: str, amount: Decimal) -> None:
        await self._update(
            affiliate_id,
            pending_commission=_floored_sub(AffiliateModel.pending_commission, amount),
        )

    async def record_payout(self, affiliate_id: str, amount: Decimal, at: datetime) -> None:
        await self._update(
            affiliate_id,
            pending_commission=_floored_sub(AffiliateModel.pending_commission, amount),
            paid_commission=AffiliateModel.paid_commission + amount,
            total_paid_out=AffiliateModel.total_paid_out + amount,
            last_payout_at=at,
        )

    async def reverse_payout(self, affiliate_id: str, amount: Decimal, *, restore_pending: bool) -> None:
        values = {
            "paid_commission": _floored_sub(AffiliateModel.paid_commission, amount),
            "total_paid_out": _floored_sub(AffiliateModel.total_paid_out, amount),
        }
        if restore_pending:
            values["pending_commission"] = AffiliateModel.pending_commission + amount
        await self._update(affiliate_id, **values)


class SQLAlchemyCommissionRepository(CommissionRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: AffiliateCommissionModel) -> AffiliateCommission:
        return AffiliateCommission(
            id=model.id,
            affiliate_id=model.affiliate_id,
            order_id=model.order_id,
            order_total=model.order_total,
            commission_type=CommissionType(model.commission_type),
            commission_rate=model.commission_rate,
            commission_amount=model.commission_amount,
            currency=model.currency,
            status=CommissionStatus(model.status),
            transfer_id=model.transfer_id,
            transfer_status=TransferStatus(model.transfer_status),
            transfer_attempt_count=model.transfer_attempt_count,
            transfer_error=model.transfer_error,
            last_transfer_attempt=model.last_transfer_attempt,
            paid_at=model.paid_at,
            approved_at=model.approved_at,
            notes=model.notes,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: AffiliateCommission) -> AffiliateCommissionModel:
        return AffiliateCommissionModel(
            id=entity.id,
            affiliate_id=entity.affiliate_id,
            order_id=entity.order_id,
            order_total=entity.order_total,
            commission_type=entity.commission_type.value,
            commission_rate=entity.commission_rate,
            commission_amount=entity.commission_amount,
            currency=entity.currency,
            status=entity.status.value,
            transfer_id=entity.transfer_id,
            transfer_status=entity.transfer_status.value,
            transfer_attempt_count=entity.transfer_attempt_count,
            transfer_error=entity.transfer_error,
            last_transfer_attempt=entity.last_transfer_attempt,
            paid_at=entity.paid_at,
            approved_at=entity.approved_at,
            notes=entity.notes,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def _conditional_update(self, *criteria, **values) -> bool:
        result = await self.session.execute(
            update(AffiliateCommissionModel)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def create(self, commission: AffiliateCommission) -> AffiliateCommission:
        db_commission = self._to_model(commission)
        try:
            self.session.add(db_commission)
            await self.session.flush()
        except IntegrityError:
            # (affiliate_id, order_id) 唯一约束冲突；调用方事务已失效
            await self.session.rollback()
            logger.warning(
                "commission_create_conflict",
                affiliate_id=commission.affiliate_id,
                order_id=commission.order_id,
            )
            raise
        await self.session.refresh(db_commission)
        logger.info(
            "commission_created",
            commission_id=commission.id,
            affiliate_id=commission.affiliate_id,
            order_id=commission.order_id,
            amount=str(commission.commission_amount),
        )
        return self._to_entity(db_commission)

    async def get_by_id(self, commission_id: str, *, for_update: bool = False) -> Optional[AffiliateCommission]:
        stmt = select(AffiliateCommissionModel).where(AffiliateCommissionModel.id == commission_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_affiliate_and_order(self, affiliate_id: str, order_id: str) -> Optional[AffiliateCommission]:
        result = await self.session.execute(
            select(AffiliateCommissionModel).where(
                AffiliateCommissionModel.affiliate_id == affiliate_id,
                AffiliateCommissionModel.order_id == order_id,
            )
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_transfer_id(self, transfer_id: str) -> Optional[AffiliateCommission]:
        result = await self.session.execute(
            select(AffiliateCommissionModel).where(AffiliateCommissionModel.transfer_id == transfer_id)
        )
        model = result.scalars().first()
        return self._to_entity(model) if model else None

    async def list_by_order(self, order_id: str) -> List[AffiliateCommission]:
        result = await self.session.execute(
            select(AffiliateCommissionModel).where(AffiliateCommissionModel.order_id == order_id)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_payable(self, affiliate_id: str, *, max_attempts: int, limit: int = 50) -> List[AffiliateCommission]:
        result = await self.session.execute(
            select(AffiliateCommissionModel)
            .where(
                AffiliateCommissionModel.affiliate_id == affiliate_id,
                AffiliateCommissionModel.status == CommissionStatus.APPROVED.value,
                or_(
                    AffiliateCommissionModel.transfer_id.is_(None),
                    AffiliateCommissionModel.transfer_status == TransferStatus.FAILED.value,
                ),
                AffiliateCommissionModel.transfer_attempt_count < max_attempts,
            )
            .order_by(AffiliateCommissionModel.created_at, AffiliateCommissionModel.id)
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_requiring_attention(
        self, *, max_attempts: int, status: Optional[CommissionStatus] = None, limit: int = 100
    ) -> List[AffiliateCommission]:
        stmt = select(AffiliateCommissionModel).where(
            or_(
                and_(
                    AffiliateCommissionModel.status == CommissionStatus.APPROVED.value,
                    or_(
                        AffiliateCommissionModel.transfer_attempt_count >= max_attempts,
                        AffiliateCommissionModel.transfer_status == TransferStatus.FAILED.value,
                    ),
                ),
                # 打款后退款，等待人工处理
                and_(
                    AffiliateCommissionModel.status == CommissionStatus.CANCELLED.value,
                    AffiliateCommissionModel.transfer_id.is_not(None),
                ),
            )
        )
        if status is not None:
            stmt = stmt.where(AffiliateCommissionModel.status == status.value)
        stmt = stmt.order_by(AffiliateCommissionModel.updated_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def approve(self, commission_id: str, at: datetime) -> bool:
        return await self._conditional_update(
            AffiliateCommissionModel.id == commission_id,
            AffiliateCommissionModel.status == CommissionStatus.PENDING.value,
            status=CommissionStatus.APPROVED.value,
            approved_at=at,
            updated_at=at,
        )

    async def cancel(
        self, commission_id: str, *, from_statuses: Iterable[CommissionStatus], note: str, at: datetime
    ) -> bool:
        return await self._conditional_update(
            AffiliateCommissionModel.id == commission_id,
            AffiliateCommissionModel.status.in_([s.value for s in from_statuses]),
            status=CommissionStatus.CANCELLED.value,
            notes=note,
            updated_at=at,
        )

    async def mark_transfer_succeeded(self, commission_id: str, transfer_id: str, at: datetime) -> bool:
        changed = await self._conditional_update(
            AffiliateCommissionModel.id == commission_id,
            AffiliateCommissionModel.status == CommissionStatus.APPROVED.value,
            status=CommissionStatus.PAID.value,
            transfer_id=transfer_id,
            transfer_status=TransferStatus.PROCESSING.value,
            transfer_error=None,
            transfer_attempt_count=AffiliateCommissionModel.transfer_attempt_count + 1,
            last_transfer_attempt=at,
            paid_at=at,
            updated_at=at,
        )
        if not changed:
            logger.warning("commission_transfer_success_not_applied", commission_id=commission_id,
                           transfer_id=transfer_id)
        return changed

    async def attach_late_transfer(self, commission_id: str, transfer_id: str, note: str, at: datetime) -> bool:
        return await self._conditional_update(
            AffiliateCommissionModel.id == commission_id,
            AffiliateCommissionModel.status == CommissionStatus.CANCELLED.value,
            AffiliateCommissionModel.transfer_id.is_(None),
            transfer_id=transfer_id,
            transfer_status=TransferStatus.PROCESSING.value,
            transfer_error=None,
            transfer_attempt_count=AffiliateCommissionModel.transfer_attempt_count + 1,
            last_transfer_attempt=at,
            notes=note,
            updated_at=at,
        )

    async def mark_transfer_failed(self, commission_id: str, error: str, at: datetime, *, max_attempts: int) -> bool:
        next_count = AffiliateCommissionModel.transfer_attempt_count + 1
        return await self._conditional_update(
            AffiliateCommissionModel.id == commission_id,
            AffiliateCommissionModel.status == CommissionStatus.APPROVED.value,
            transfer_status=TransferStatus.FAILED.value,
            transfer_error=error,
            transfer_attempt_count=case(
                (next_count > max_attempts, AffiliateCommissionModel.transfer_attempt_count),
                else_=next_count,
            ),
            last_transfer_attempt=at,
            updated_at=at,
        )

    async def mark_transfer_confirmed(self, transfer_id: str) -> bool:
        return await self._conditional_update(
            AffiliateCommissionModel.transfer_id == transfer_id,
            AffiliateCommissionModel.transfer_status == TransferStatus.PROCESSING.value,
            transfer_status=TransferStatus.COMPLETED.value,
        )

    async def revert_transfer(self, commission_id: str, transfer_id: str, error: str, at: datetime) -> bool:
        return await self._conditional_update(
            AffiliateCommissionModel.id == commission_id,
            AffiliateCommissionModel.transfer_id == transfer_id,
            AffiliateCommissionModel.status == CommissionStatus.PAID.value,
            status=CommissionStatus.APPROVED.value,
            transfer_id=None,
            transfer_status=TransferStatus.FAILED.value,
            transfer_error=error,
            paid_at=None,
            updated_at=at,
        )

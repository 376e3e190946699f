"""
Builds application services from settings; shared by the API dependencies
and the Celery tasks.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from application.ports.task_dispatcher import LedgerTaskDispatcher
from application.services.commission_service import CommissionApplicationService
from application.services.order_ledger_service import OrderLedgerApplicationService
from application.services.payout_service import PayoutEngine
from application.services.reconciliation_service import ReconciliationSweeper
from core.config import settings
from core.settings import payment_settings
from infrastructure.external.cache import get_redis_client, redis_configured
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

SWEEP_LOCK_KEY = "payouts:sweep"


def build_payout_engine(dispatcher: Optional[LedgerTaskDispatcher] = None) -> PayoutEngine:
    payout = payment_settings.payout
    return PayoutEngine(
        SQLAlchemyUnitOfWork,
        get_payment_gateway,
        dispatcher=dispatcher,
        max_attempts=payout.max_transfer_attempts,
        transfer_timeout=payout.transfer_timeout_seconds,
        refund_policy=payout.refund_policy,
    )


def build_order_service(dispatcher: Optional[LedgerTaskDispatcher] = None) -> OrderLedgerApplicationService:
    payout = payment_settings.payout
    return OrderLedgerApplicationService(
        SQLAlchemyUnitOfWork,
        get_payment_gateway,
        dispatcher,
        auto_approve=payout.auto_approve,
        refund_policy=payout.refund_policy,
    )


def build_commission_service(dispatcher: Optional[LedgerTaskDispatcher] = None) -> CommissionApplicationService:
    return CommissionApplicationService(
        SQLAlchemyUnitOfWork,
        get_payment_gateway,
        dispatcher,
        max_attempts=payment_settings.payout.max_transfer_attempts,
    )


@asynccontextmanager
async def sweep_lock():
    """Cluster-wide single-flight for the sweep; raises TimeoutError when held."""
    client = await get_redis_client()
    async with client.lock(
        SWEEP_LOCK_KEY,
        timeout=payment_settings.payout.sweep_lock_timeout_seconds,
        blocking_timeout=0,
    ):
        yield


def build_sweeper(engine: Optional[PayoutEngine] = None) -> ReconciliationSweeper:
    return ReconciliationSweeper(
        SQLAlchemyUnitOfWork,
        get_payment_gateway,
        engine or build_payout_engine(),
        cron_secret=settings.CRON_SECRET,
        batch_size=payment_settings.payout.batch_size,
        lock_factory=sweep_lock if redis_configured() else None,
    )

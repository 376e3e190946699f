"""Payout Celery tasks: the periodic sweep, single payouts and clawbacks"""
from __future__ import annotations

from celery import shared_task

from ..utils.base_task import BaseTask, run_async
from core.logging_config import get_logger

logger = get_logger(__name__)


@shared_task(name="payouts.reconcile", bind=True, base=BaseTask, ignore_result=False)
def reconcile_payouts(self) -> dict:
    """Beat entry point; trusted caller, so the bearer check is skipped."""
    from domain.common.exceptions import SweepInProgressException
    from infrastructure.tasks import CeleryTaskDispatcher
    from infrastructure.wiring import build_payout_engine, build_sweeper

    async def _run():
        engine = build_payout_engine(CeleryTaskDispatcher())
        return await build_sweeper(engine).run(authorized=True)

    try:
        summary = run_async(_run)
    except SweepInProgressException:
        logger.info("payout_sweep_overlap_skipped", task_id=self.request.id)
        return {"success": False, "skipped": "sweep already running"}
    return summary.model_dump()


@shared_task(name="payouts.pay_commission", bind=True, base=BaseTask)
def pay_commission(self, commission_id: str, force: bool = False) -> dict:
    """Attempt one payout; failures are already recorded on the commission."""
    from infrastructure.tasks import CeleryTaskDispatcher
    from infrastructure.wiring import build_payout_engine

    async def _run():
        return await build_payout_engine(CeleryTaskDispatcher()).pay_commission(commission_id, force=force)

    result = run_async(_run)
    logger.info("payout_task_finished", commission_id=commission_id, outcome=result.outcome)
    return result.model_dump()


@shared_task(
    name="payouts.reverse_transfer",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def reverse_transfer(self, commission_id: str, transfer_id: str) -> dict:
    """Clawback of a refunded order's paid commission."""
    from infrastructure.wiring import build_commission_service

    async def _run():
        return await build_commission_service().reverse_transfer(commission_id, transfer_id)

    reversal_id = run_async(_run)
    return {"commission_id": commission_id, "transfer_id": transfer_id, "reversal_id": reversal_id}

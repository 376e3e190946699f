"""Order Celery tasks"""
from __future__ import annotations

from celery import shared_task

from ..utils.base_task import BaseTask, run_async
from core.logging_config import get_logger

logger = get_logger(__name__)


@shared_task(
    name="orders.notify_paid",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def notify_order_paid(self, order_id: str) -> dict:
    """Hand a paid order to downstream fulfilment.

    Receipt email and fulfilment live outside this service; the task publishes
    the structured event they consume.
    """
    from infrastructure.wiring import build_order_service

    async def _run():
        return await build_order_service().get_order(order_id)

    order = run_async(_run)
    logger.info(
        "order_paid_notification",
        order_id=order.id,
        email=order.email,
        total=str(order.total),
        currency=order.currency,
        provider=order.provider,
    )
    return {"order_id": order.id, "status": order.status}

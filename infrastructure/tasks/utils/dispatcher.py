"""Celery-backed implementation of the ledger task dispatcher port."""
from __future__ import annotations

from typing import Any, Dict, Optional

from ..config.celery import celery_app
from core.logging_config import get_logger

logger = get_logger(__name__)


class CeleryTaskDispatcher:
    """Schedules ledger side effects by task name; callers never import task modules."""

    def notify_order_paid(self, order_id: str) -> Optional[str]:
        return self.enqueue("orders.notify_paid", kwargs={"order_id": order_id})

    def enqueue_commission_payout(self, commission_id: str, *, force: bool = False) -> Optional[str]:
        return self.enqueue("payouts.pay_commission", kwargs={"commission_id": commission_id, "force": force})

    def enqueue_transfer_reversal(self, commission_id: str, transfer_id: str) -> Optional[str]:
        return self.enqueue(
            "payouts.reverse_transfer",
            kwargs={"commission_id": commission_id, "transfer_id": transfer_id},
        )

    def enqueue(self, task_name: str, *, args: tuple | None = None, kwargs: Dict[str, Any] | None = None) -> Optional[str]:
        if not celery_app.conf.broker_url:
            logger.warning("task_dispatch_skipped", task_name=task_name, reason="no broker configured")
            return None
        result = celery_app.send_task(task_name, args=args or (), kwargs=kwargs or {})
        logger.info("task_dispatched", task_name=task_name, task_id=result.id)
        return result.id

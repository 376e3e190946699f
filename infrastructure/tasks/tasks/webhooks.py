"""Webhook dedup housekeeping"""
from __future__ import annotations

from celery import shared_task

from ..utils.base_task import BaseTask, run_async
from core.logging_config import get_logger

logger = get_logger(__name__)


@shared_task(name="webhooks.purge_expired", bind=True, base=BaseTask)
def purge_expired_webhook_markers(self) -> dict:
    """Keep processed_webhook_events bounded to the retention window."""
    from core.settings import payment_settings
    from infrastructure.idempotency import DatabaseIdempotencyGuard
    from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

    backend = payment_settings.webhook.dedup_backend
    if backend != "database":
        # redis expires keys itself; memory markers die with the process
        return {"backend": backend, "purged": 0}

    guard = DatabaseIdempotencyGuard(SQLAlchemyUnitOfWork, ttl_seconds=payment_settings.webhook.dedup_ttl_seconds)
    purged = run_async(guard.purge_expired)
    return {"backend": backend, "purged": purged}

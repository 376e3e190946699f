"""Common base task for Celery jobs"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Provides unified failure logging."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            args=args,
            kwargs=kwargs,
            exc=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
        )
        super().on_success(retval, task_id, args, kwargs)


def run_async(fn: Callable[[], Awaitable[Any]]) -> Any:
    """Run a coroutine on a fresh event loop, then drop loop-bound clients.

    Pooled DB connections, the redis client and cached gateway HTTP clients
    all belong to the loop that created them.
    """
    async def _runner():
        from infrastructure.database import engine
        from infrastructure.external.cache import shutdown_redis_client
        from infrastructure.external.payments import close_payment_gateways

        try:
            return await fn()
        finally:
            await close_payment_gateways()
            await shutdown_redis_client()
            await engine.dispose()

    return asyncio.run(_runner())

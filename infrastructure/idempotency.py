"""
Webhook idempotency guards.

All backends keep a marker per `<provider>:<event id>` for a bounded
retention window. `claim` is the atomic check-and-mark used by the
dispatcher; `release` drops the marker after a failed handler so the
provider's redelivery is processed.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.config import settings
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import WebhookEventClaimedException
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.external.cache import RedisClient, get_redis_client

logger = get_logger(__name__)

_KEY_PREFIX = "webhook:event"


class InMemoryIdempotencyGuard:
    """Process-local guard. Development and tests only."""

    backend = "memory"

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _purge(self, now: float) -> None:
        expired = [k for k, exp in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]

    async def seen(self, event_id: str) -> bool:
        async with self._lock:
            now = self._clock()
            self._purge(now)
            return event_id in self._entries

    async def mark_seen(self, event_id: str) -> None:
        async with self._lock:
            self._entries[event_id] = self._clock() + self._ttl

    async def claim(self, event_id: str) -> bool:
        async with self._lock:
            now = self._clock()
            self._purge(now)
            if event_id in self._entries:
                return False
            self._entries[event_id] = now + self._ttl
            return True

    async def release(self, event_id: str) -> None:
        async with self._lock:
            self._entries.pop(event_id, None)


class RedisIdempotencyGuard:
    """SET NX EX on the shared Redis; Redis errors propagate to the caller."""

    backend = "redis"

    def __init__(self, client: RedisClient, ttl_seconds: int = 300):
        self._client = client
        self._ttl = ttl_seconds

    @staticmethod
    def _key(event_id: str) -> str:
        return f"{_KEY_PREFIX}:{event_id}"

    async def seen(self, event_id: str) -> bool:
        return bool(await self._client.exists(self._key(event_id)))

    async def mark_seen(self, event_id: str) -> None:
        await self._client.set(self._key(event_id), "1", ttl=self._ttl)

    async def claim(self, event_id: str) -> bool:
        return await self._client.set_if_absent(self._key(event_id), "1", ttl=self._ttl)

    async def release(self, event_id: str) -> None:
        await self._client.delete(self._key(event_id))


class DatabaseIdempotencyGuard:
    """Durable guard on the processed_webhook_events table."""

    backend = "database"

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], ttl_seconds: int = 300):
        self._uow_factory = uow_factory
        self._ttl = ttl_seconds

    @staticmethod
    def _provider(event_id: str) -> str:
        return event_id.split(":", 1)[0] if ":" in event_id else "unknown"

    async def seen(self, event_id: str) -> bool:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.webhook_event_repository.exists(event_id, datetime.now(timezone.utc))

    async def mark_seen(self, event_id: str) -> None:
        await self.claim(event_id)

    async def claim(self, event_id: str) -> bool:
        now = datetime.now(timezone.utc)
        try:
            async with self._uow_factory() as uow:
                await uow.webhook_event_repository.claim(
                    event_id,
                    self._provider(event_id),
                    now=now,
                    expires_at=now + timedelta(seconds=self._ttl),
                )
        except WebhookEventClaimedException:
            return False
        return True

    async def release(self, event_id: str) -> None:
        async with self._uow_factory() as uow:
            await uow.webhook_event_repository.release(event_id)

    async def purge_expired(self) -> int:
        """Delete markers past their retention window; returns the row count."""
        async with self._uow_factory() as uow:
            purged = await uow.webhook_event_repository.purge_expired(datetime.now(timezone.utc))
        logger.info("webhook_markers_purged", purged=purged)
        return purged


async def build_idempotency_guard(
    uow_factory: Callable[..., AbstractUnitOfWork],
    backend: Optional[str] = None,
):
    """Guard for the configured WEBHOOK__DEDUP_BACKEND."""
    name = (backend or payment_settings.webhook.dedup_backend).lower()
    ttl = payment_settings.webhook.dedup_ttl_seconds
    if name == "memory":
        if settings.is_production:
            raise RuntimeError("In-memory webhook deduplication is not allowed in production")
        logger.warning("webhook_dedup_in_memory", ttl_seconds=ttl)
        return InMemoryIdempotencyGuard(ttl_seconds=ttl)
    if name == "redis":
        return RedisIdempotencyGuard(await get_redis_client(), ttl_seconds=ttl)
    if name == "database":
        return DatabaseIdempotencyGuard(uow_factory, ttl_seconds=ttl)
    raise ValueError(f"Unknown webhook dedup backend: {name}")

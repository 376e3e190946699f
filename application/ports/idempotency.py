"""
Webhook idempotency port.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class IdempotencyGuard(Protocol):
    """Remembers processed event ids for a bounded retention window."""

    backend: str

    async def seen(self, event_id: str) -> bool: ...

    async def mark_seen(self, event_id: str) -> None: ...

    async def claim(self, event_id: str) -> bool:
        """Check-and-mark in one step; False when already claimed."""
        ...

    async def release(self, event_id: str) -> None: ...

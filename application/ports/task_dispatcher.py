"""
Background side-effect port.

Application services enqueue work through this protocol; the Celery-backed
implementation lives in infrastructure.tasks.dispatcher.
"""
from __future__ import annotations

from typing import Optional, Protocol


class LedgerTaskDispatcher(Protocol):

    def notify_order_paid(self, order_id: str) -> Optional[str]: ...

    def enqueue_commission_payout(self, commission_id: str, *, force: bool = False) -> Optional[str]: ...

    def enqueue_transfer_reversal(self, commission_id: str, transfer_id: str) -> Optional[str]: ...

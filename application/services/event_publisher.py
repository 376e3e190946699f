"""
Hands committed ledger events to background tasks.
"""
from __future__ import annotations

from typing import Iterable, Optional

from application.ports.task_dispatcher import LedgerTaskDispatcher
from domain.affiliate.events import CommissionApproved, CommissionCancelled
from domain.order.events import OrderPaid
from core.logging_config import get_logger


logger = get_logger(__name__)


def publish_ledger_events(dispatcher: Optional[LedgerTaskDispatcher], events: Iterable) -> None:
    """Call only after the transaction that produced the events has committed.

    Dispatch failures are logged; the ledger change itself already stands.
    """
    if dispatcher is None:
        return
    for event in events:
        try:
            if isinstance(event, OrderPaid):
                dispatcher.notify_order_paid(event.order_id)
            elif isinstance(event, CommissionApproved) and event.auto_payout:
                dispatcher.enqueue_commission_payout(event.commission_id)
            elif isinstance(event, CommissionCancelled) and event.clawback and event.transfer_id:
                dispatcher.enqueue_transfer_reversal(event.commission_id, event.transfer_id)
        except Exception as exc:
            logger.error("domain_event_dispatch_failed", event_type=type(event).__name__, error=str(exc))

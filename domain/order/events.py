"""
Order domain events.

Collected by the domain service and published by the application layer after
the transaction commits.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class OrderEvent:
    order_id: str
    provider: str
    provider_ref: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class OrderPaid(OrderEvent):
    email: str = ""
    total: str = ""
    currency: str = ""


@dataclass
class OrderCancelled(OrderEvent):
    payment_status: str = ""


@dataclass
class OrderRefunded(OrderEvent):
    pass

"""
Commission domain events.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class CommissionEvent:
    commission_id: str
    affiliate_id: str
    order_id: str
    amount: str = ""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CommissionCreated(CommissionEvent):
    pass


@dataclass
class CommissionApproved(CommissionEvent):
    # affiliate opted into automatic payouts and can receive them
    auto_payout: bool = False


@dataclass
class CommissionPaid(CommissionEvent):
    transfer_id: str = ""


@dataclass
class CommissionCancelled(CommissionEvent):
    was_paid: bool = False
    clawback: bool = False
    transfer_id: Optional[str] = None


@dataclass
class CommissionTransferReversed(CommissionEvent):
    transfer_id: str = ""

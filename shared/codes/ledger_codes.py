"""
Order and commission ledger codes (21xxx).
"""
from __future__ import annotations

from enum import IntEnum


class LedgerCode(IntEnum):
    # Orders (210xx)
    ORDER_NOT_FOUND = 21000
    ORDER_AMOUNT_MISMATCH = 21001
    ORDER_TRANSITION_ILLEGAL = 21002
    COUPON_NOT_REDEEMABLE = 21003

    # Affiliates / commissions (211xx)
    AFFILIATE_NOT_FOUND = 21100
    COMMISSION_NOT_FOUND = 21101
    COMMISSION_NOT_PAYABLE = 21102
    COMMISSION_ALREADY_PAID = 21103

    # Reconciliation (212xx)
    SWEEP_NOT_CONFIGURED = 21200
    SWEEP_IN_PROGRESS = 21201

    # Webhooks (213xx)
    WEBHOOK_PROVIDER_UNKNOWN = 21300
    WEBHOOK_EVENT_CLAIMED = 21301

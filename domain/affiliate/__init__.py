from .entity import (
    Affiliate,
    AffiliateCommission,
    AffiliateStatus,
    CommissionStatus,
    CommissionType,
    TransferStatus,
    UNPAID_STATUSES,
    compute_commission,
)
from .service import CommissionLedgerDomainService, CommissionCreation

__all__ = [
    "Affiliate",
    "AffiliateCommission",
    "AffiliateStatus",
    "CommissionStatus",
    "CommissionType",
    "TransferStatus",
    "UNPAID_STATUSES",
    "compute_commission",
    "CommissionLedgerDomainService",
    "CommissionCreation",
]

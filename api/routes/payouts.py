"""
Payout sweep trigger
"""
from typing import Optional

from fastapi import APIRouter, Depends

from application.services.reconciliation_service import ReconciliationSweeper
from api.dependencies import get_bearer_credential, get_sweeper
from core.response import success_response

router = APIRouter(prefix="/payouts", tags=["Payouts"])


@router.post("/sweep", summary="Run the reconciliation sweep")
async def run_sweep(
    credential: Optional[str] = Depends(get_bearer_credential),
    sweeper: ReconciliationSweeper = Depends(get_sweeper),
):
    """
    Pay out every payable commission of every payout-capable affiliate.

    - 503 while CRON_SECRET is unset
    - 401 for a missing or wrong bearer secret
    - 409 while another sweep holds the lock
    """
    summary = await sweeper.run(credential)
    return success_response(data=summary.model_dump(), message="Sweep finished")

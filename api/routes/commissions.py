"""
佣金运维接口
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from application.services.commission_service import CommissionApplicationService
from application.services.payout_service import PayoutEngine
from api.dependencies import get_commission_service, get_payout_engine, require_operator
from core.response import success_response

router = APIRouter(
    prefix="/commissions",
    tags=["Commissions"],
    dependencies=[Depends(require_operator)],
)


@router.get("/attention", summary="Commissions needing operator review")
async def list_attention(
    status: Optional[str] = Query(None, pattern="^(approved|cancelled)$"),
    limit: int = Query(100, ge=1, le=500),
    service: CommissionApplicationService = Depends(get_commission_service),
):
    """转账失败或重试耗尽的佣金，以及打款后退款的佣金"""
    items = await service.list_requiring_attention(status=status, limit=limit)
    return success_response(data=[c.model_dump() for c in items])


@router.get("/{commission_id}", summary="Get a commission")
async def get_commission(
    commission_id: str,
    service: CommissionApplicationService = Depends(get_commission_service),
):
    commission = await service.get_commission(commission_id)
    return success_response(data=commission.model_dump())


@router.post("/{commission_id}/approve", summary="Approve a pending commission")
async def approve_commission(
    commission_id: str,
    service: CommissionApplicationService = Depends(get_commission_service),
):
    commission = await service.approve(commission_id)
    return success_response(data=commission.model_dump(), message="Commission approved")


@router.post("/{commission_id}/retry-payout", summary="Retry a commission payout")
async def retry_payout(
    commission_id: str,
    engine: PayoutEngine = Depends(get_payout_engine),
):
    """忽略重试次数上限；已支付或未审核的佣金返回 409"""
    result = await engine.pay_commission(commission_id, force=True)
    return success_response(data=result.model_dump(), message=f"Payout {result.outcome}")

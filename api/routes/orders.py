"""
订单相关接口
"""
from fastapi import APIRouter, Depends, status

from application.dtos.ledger import CreateOrder
from application.services.order_ledger_service import OrderLedgerApplicationService
from api.dependencies import get_order_service, require_operator
from core.response import success_response

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("", summary="Create an order", status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: CreateOrder,
    service: OrderLedgerApplicationService = Depends(get_order_service),
):
    """
    创建待支付订单并发起支付

    - **items**: 订单明细，按提交的价格快照保存
    - **coupon_code**: 可选，订单保存前校验
    - **affiliate_code**: 可选推广码；未知推广码会被拒绝
    - 响应中的 `client_params` 包含前端收银台所需参数
      （Stripe client secret、PayPal 或 Mercado Pago 的授权跳转地址）
    """
    order = await service.initiate_order(payload)
    return success_response(data=order.model_dump(), message="Order created")


@router.get("/{order_id}", summary="Get an order", dependencies=[Depends(require_operator)])
async def get_order(
    order_id: str,
    service: OrderLedgerApplicationService = Depends(get_order_service),
):
    order = await service.get_order(order_id)
    return success_response(data=order.model_dump())

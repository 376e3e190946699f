"""
API 依赖注入 - 服务装配与共享密钥认证
"""
import hmac
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from application.ports.idempotency import IdempotencyGuard
from application.ports.task_dispatcher import LedgerTaskDispatcher
from application.services.commission_service import CommissionApplicationService
from application.services.order_ledger_service import OrderLedgerApplicationService
from application.services.payout_service import PayoutEngine
from application.services.reconciliation_service import ReconciliationSweeper
from application.services.webhook_service import WebhookDispatcher
from core.config import settings
from domain.common.exceptions import AuthenticationFailedException, SecretNotConfiguredException
from infrastructure.external.payments import SUPPORTED_PROVIDERS, get_payment_gateway
from infrastructure.idempotency import build_idempotency_guard
from infrastructure.tasks import CeleryTaskDispatcher
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from infrastructure import wiring

# 共享密钥通过 "Authorization: Bearer <secret>" 传递
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="Shared secret (CRON_SECRET for the sweep, OPERATOR_SECRET for operator routes)",
    auto_error=False,
)

_guard: Optional[IdempotencyGuard] = None


async def get_bearer_credential(
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Optional[str]:
    if bearer and bearer.credentials:
        return bearer.credentials
    return None


async def require_operator(credential: Optional[str] = Depends(get_bearer_credential)) -> None:
    """未配置 OPERATOR_SECRET 时运维接口一律拒绝访问"""
    secret = settings.OPERATOR_SECRET
    if not secret:
        raise SecretNotConfiguredException("OPERATOR_SECRET")
    if not credential or not hmac.compare_digest(credential.encode(), secret.encode()):
        raise AuthenticationFailedException("Invalid operator credential")


async def get_task_dispatcher() -> LedgerTaskDispatcher:
    return CeleryTaskDispatcher()


async def get_order_service(
    dispatcher: LedgerTaskDispatcher = Depends(get_task_dispatcher),
) -> OrderLedgerApplicationService:
    return wiring.build_order_service(dispatcher)


async def get_commission_service(
    dispatcher: LedgerTaskDispatcher = Depends(get_task_dispatcher),
) -> CommissionApplicationService:
    return wiring.build_commission_service(dispatcher)


async def get_payout_engine(
    dispatcher: LedgerTaskDispatcher = Depends(get_task_dispatcher),
) -> PayoutEngine:
    return wiring.build_payout_engine(dispatcher)


async def get_sweeper(engine: PayoutEngine = Depends(get_payout_engine)) -> ReconciliationSweeper:
    return wiring.build_sweeper(engine)


async def get_idempotency_guard() -> IdempotencyGuard:
    # 每个进程一个守卫实例；内存后端只能以单例方式工作
    global _guard
    if _guard is None:
        _guard = await build_idempotency_guard(SQLAlchemyUnitOfWork)
    return _guard


async def get_webhook_dispatcher(
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
    orders: OrderLedgerApplicationService = Depends(get_order_service),
    commissions: CommissionApplicationService = Depends(get_commission_service),
) -> WebhookDispatcher:
    return WebhookDispatcher(
        get_payment_gateway,
        guard,
        orders,
        commissions,
        providers=SUPPORTED_PROVIDERS,
    )

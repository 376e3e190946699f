"""
FastAPI 应用主入口
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import commissions as commission_routes
from api.routes import orders as order_routes
from api.routes import payouts as payout_routes
from api.routes import webhooks as webhook_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.messages import t
from core.logging_config import get_logger, configure_logging
from core.settings import payment_settings
from infrastructure.database import create_tables
from infrastructure.external.cache import (
    init_redis_client,
    redis_configured,
    shutdown_redis_client,
)
from infrastructure.external.payments import close_payment_gateways


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 仅开发环境自动建表；生产环境使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create outside DEBUG, use Alembic migrations (alembic upgrade head)"
        )
    if redis_configured():
        try:
            await init_redis_client()
        except Exception as exc:
            # 基于 redis 的去重与巡检锁在使用时才会失败，不影响启动
            logger.error("redis_init_failed", error=str(exc))
    elif payment_settings.webhook.dedup_backend == "redis":
        logger.warning("redis_dedup_without_url", message="WEBHOOK__DEDUP_BACKEND=redis requires REDIS__URL")
    if not settings.CRON_SECRET:
        logger.warning("cron_secret_missing", message="POST /api/v1/payouts/sweep answers 503 until CRON_SECRET is set")

    yield

    await close_payment_gateways()
    if redis_configured():
        await shutdown_redis_client()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Order reconciliation and affiliate commission payouts",
)

# 中间件按注册的逆序执行：RequestID 先执行，日志中间件才能拿到 request_id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(webhook_routes.router, prefix="/api/v1")
app.include_router(payout_routes.router, prefix="/api/v1")
app.include_router(commission_routes.router, prefix="/api/v1")
app.include_router(order_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
        message=t("welcome")
    )


@app.get("/health", tags=["Health"])
async def health_check():
    return success_response(data={"status": "healthy"}, message=t("health.ok"))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )

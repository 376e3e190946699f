"""缓存层导出"""
from .redis_client import (
    RedisClient,
    LockNotAcquiredError,
    redis_configured,
    init_redis_client,
    get_redis_client,
    shutdown_redis_client,
)


__all__ = [
    "RedisClient",
    "LockNotAcquiredError",
    "redis_configured",
    "init_redis_client",
    "get_redis_client",
    "shutdown_redis_client",
]

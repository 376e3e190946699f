"""
Redis 客户端 - 命名空间键、JSON 值与分布式锁
"""
from __future__ import annotations

import asyncio
import json
import socket
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError, LockError

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class LockNotAcquiredError(TimeoutError):
    """锁已被其他持有者占用"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"lock not acquired: {key}")


class RedisClient:
    """
    redis.asyncio 的轻量封装

    读操作（get/exists）遇到 RedisError 时降级为默认值；
    关乎正确性的写操作（set_if_absent、lock）直接抛出 RedisError。
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        default_ttl: Optional[int] = None,
        serializer: Optional[Callable] = None,
        deserializer: Optional[Callable] = None,
    ):
        self._client = client
        self._namespace = namespace.strip(":")
        self._default_ttl = default_ttl if default_ttl is not None else settings.redis.default_ttl
        self._serializer = serializer or self._default_serializer
        self._deserializer = deserializer or self._default_deserializer

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    def _default_serializer(self, value: Any) -> str:
        if isinstance(value, (str, int, float)):
            return str(value)
        return json.dumps(value, default=str, ensure_ascii=False)

    def _default_deserializer(self, value: Optional[str]) -> Any:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    async def get(self, key: str, default: Any = None) -> Any:
        formatted_key = self._format_key(key)
        try:
            value = await self._client.get(formatted_key)
        except RedisError as e:
            logger.error("redis_get_failed", key=formatted_key, error=str(e))
            return default
        return self._deserializer(value) if value is not None else default

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        formatted_key = self._format_key(key)
        expire = ttl if ttl is not None else self._default_ttl
        try:
            result = await self._client.set(
                formatted_key,
                self._serializer(value),
                ex=expire if expire and expire > 0 else None,
            )
        except RedisError as e:
            logger.error("redis_set_failed", key=formatted_key, error=str(e))
            return False
        return bool(result)

    async def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        """SET NX EX；当前调用方创建了该键时返回 True，异常直接抛出。"""
        formatted_key = self._format_key(key)
        result = await self._client.set(formatted_key, self._serializer(value), ex=ttl, nx=True)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        formatted_keys = [self._format_key(k) for k in keys]
        return await self._client.delete(*formatted_keys)

    async def exists(self, *keys: str) -> int:
        formatted_keys = [self._format_key(k) for k in keys]
        try:
            return await self._client.exists(*formatted_keys)
        except RedisError as e:
            logger.error("redis_exists_failed", keys=formatted_keys, error=str(e))
            return 0

    @asynccontextmanager
    async def lock(self, key: str, timeout: int = 10, blocking_timeout: Optional[float] = 5):
        """
        分布式锁

        blocking_timeout=0 时只尝试一次；锁被其他进程持有时抛出 LockNotAcquiredError。
        """
        lock_key = f"lock:{self._format_key(key)}"
        lock = self._client.lock(
            lock_key,
            timeout=timeout,
            blocking=bool(blocking_timeout),
            blocking_timeout=blocking_timeout or None,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise LockNotAcquiredError(lock_key)
        try:
            yield lock
        finally:
            try:
                await lock.release()
            except LockError as e:
                # 释放前锁已过期
                logger.warning("redis_lock_release_failed", key=lock_key, error=str(e))

    async def health_check(self) -> bool:
        try:
            return await self._client.ping()
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False

    @property
    def client(self) -> aioredis.Redis:
        return self._client


_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


def redis_configured() -> bool:
    return bool(settings.redis.url)


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL is not configured")

        keepalive_opts = {}
        if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
            keepalive_opts = {
                socket.TCP_KEEPIDLE: 1,
                socket.TCP_KEEPINTVL: 1,
                socket.TCP_KEEPCNT: 3,
            }

        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
            socket_keepalive=True,
            socket_keepalive_options=keepalive_opts,
            **kwargs,
        )
        try:
            await client.ping()
        except RedisError as e:
            logger.error("redis_init_failed", error=str(e))
            raise

        _redis_client = client
        _cache_instance = RedisClient(client=client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


async def get_redis_client() -> RedisClient:
    if _cache_instance is None:
        return await init_redis_client()
    return _cache_instance


async def shutdown_redis_client() -> None:
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("redis_closed")
        except RedisError as e:
            logger.error("redis_close_failed", error=str(e))
        finally:
            _redis_client = None
            _cache_instance = None


__all__ = [
    "RedisClient",
    "LockNotAcquiredError",
    "redis_configured",
    "init_redis_client",
    "get_redis_client",
    "shutdown_redis_client",
]

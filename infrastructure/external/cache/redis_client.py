"""
Redis client: namespaced keys and distributed locks
"""
from __future__ import annotations

import asyncio
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis import asyncio as aioredis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError, RedisError

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Redis client

    Features:
    - namespaced keys
    - distributed locks
    - health check
    """

    def __init__(self, client: aioredis.Redis, namespace: str = ""):
        self._client = client
        self._namespace = namespace.strip(":")

    def _format_key(self, key: str) -> str:
        """Prefix the key with the namespace"""
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    @asynccontextmanager
    async def lock(
        self,
        key: str,
        timeout: int = 10,
        blocking_timeout: int = 5,
    ) -> AsyncIterator[Lock]:
        """
        Distributed lock context manager

        Args:
            key: lock key
            timeout: lock expiry in seconds, so a crashed holder releases it
            blocking_timeout: seconds to wait for the lock before raising TimeoutError
        """
        lock_key = f"lock:{self._format_key(key)}"
        lock = self._client.lock(
            lock_key,
            timeout=timeout,
            blocking_timeout=blocking_timeout,
            thread_local=False,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise TimeoutError(f"Could not acquire lock: {lock_key}")
        try:
            yield lock
        finally:
            try:
                await lock.release()
            except LockError as e:
                # release fails when the lock expired and someone else took it
                logger.error("redis_lock_release_failed", key=lock_key, error=str(e))

    async def health_check(self) -> bool:
        """Health check"""
        try:
            return await self._client.ping()
        except RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False

    @property
    def client(self) -> aioredis.Redis:
        """The raw redis client (use with care)"""
        return self._client


# ============= singleton =============

_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """
    Initialize the redis client

    Args:
        namespace: key namespace (defaults to settings.redis.namespace)
        **kwargs: extra redis connection arguments
    """
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL is not set, cannot initialize the redis client")

        # portable keepalive options where available
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
            **kwargs
        )
        try:
            await client.ping()
        except RedisError as e:
            logger.error("redis_init_failed", error=str(e))
            await client.aclose()
            raise

        _redis_client = client
        _cache_instance = RedisClient(client=client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_client_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


def current_redis_client() -> Optional[RedisClient]:
    """The initialized client, or None (never connects)"""
    return _cache_instance


async def shutdown_redis_client() -> None:
    """Close the redis connection"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("redis_client_closed")
        except RedisError as e:
            logger.error("redis_close_failed", error=str(e))
        finally:
            _redis_client = None
            _cache_instance = None


__all__ = [
    "RedisClient",
    "current_redis_client",
    "init_redis_client",
    "shutdown_redis_client",
]

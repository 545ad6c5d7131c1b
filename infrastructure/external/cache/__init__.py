"""Redis connection: record lock backend and health check"""
from .redis_client import (
    RedisClient,
    current_redis_client,
    init_redis_client,
    shutdown_redis_client,
)


__all__ = [
    "RedisClient",
    "current_redis_client",
    "init_redis_client",
    "shutdown_redis_client",
]

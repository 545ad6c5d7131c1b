"""
Record lock implementations for the RecordLocker port.

- LocalRecordLocker: per-key asyncio locks, for a single process (tests, dev)
- RedisRecordLocker: redis-py distributed locks shared by API and workers
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from core.logging_config import get_logger
from domain.payment.exceptions import ConcurrentUpdateError
from infrastructure.external.cache.redis_client import RedisClient


logger = get_logger(__name__)


class LocalRecordLocker:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # last user of the key drops the entry
                del self._waiters[key]
                self._locks.pop(key, None)


class RedisRecordLocker:
    def __init__(
        self,
        client: RedisClient,
        *,
        prefix: str = "payment",
        timeout: int = 30,
        blocking_timeout: int = 10,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        acquired = False
        try:
            async with self._client.lock(
                f"{self._prefix}:{key}",
                timeout=self._timeout,
                blocking_timeout=self._blocking_timeout,
            ):
                acquired = True
                yield
        except TimeoutError as exc:
            if acquired:
                raise
            logger.warning("payment_lock_timeout", key=key, blocking_timeout=self._blocking_timeout)
            raise ConcurrentUpdateError(key, reason="record lock not acquired") from exc

"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers should subclass and implement provider-specific logic.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from application.dtos.payments import NormalizedStatus
from core.logging_config import get_logger
from domain.payment.entity import MobileOperator
from shared.codes.payment_codes import PROVIDER_OPERATOR_CODES, PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 5.0, "read": 30.0, "write": 10.0, "total": 30.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        # Kept open for reuse; aclose() closes it.
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[Any]]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> NormalizedStatus:
        if provider_status is None:
            return NormalizedStatus.UNKNOWN
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        internal = mapping.get(str(provider_status).strip().upper())
        return NormalizedStatus(internal) if internal else NormalizedStatus.UNKNOWN

    def _map_operator(self, label: Optional[str]) -> Optional[MobileOperator]:
        if not label:
            return None
        mapping = PROVIDER_OPERATOR_CODES.get(self.provider, {})
        internal = mapping.get(str(label).strip().upper())
        return MobileOperator(internal) if internal else None

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )

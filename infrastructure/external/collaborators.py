"""
HTTP adapters for the reservation, wallet and notification collaborators.

Each service is optional: without a configured base URL the reservation lookup
returns an empty trip context (base commission rate) and the wallet refuses to
settle, which leaves the commission to the retry/review flow.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.ports.collaborators import TripContext
from core.logging_config import get_logger
from core.settings import CollaboratorSettings
from domain.payment.entity import to_decimal
from domain.payment.exceptions import DomainValidationException, SettlementError


logger = get_logger(__name__)


class _CollaboratorClient:
    def __init__(
        self,
        base_url: Optional[str],
        *,
        timeout: float = 10.0,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self._timeout = httpx.Timeout(timeout)
        self._max_retries = max_retries
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                return await client.request(method, f"{self.base_url}/{path.lstrip('/')}", **kwargs)

        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=0.2, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        ):
            with attempt:
                return await _send()


class HttpReservationLookup(_CollaboratorClient):
    async def get_trip_context(self, reservation_id: str) -> TripContext:
        if not self.base_url:
            return TripContext(reservation_id=reservation_id)
        try:
            resp = await self._request("GET", f"reservations/{reservation_id}/trip-context")
        except httpx.HTTPError as exc:
            logger.warning("reservation_lookup_failed", reservation_id=reservation_id, error=str(exc))
            return TripContext(reservation_id=reservation_id)
        if resp.status_code == 404:
            raise DomainValidationException(
                f"Unknown reservation {reservation_id}", field="reservation_id"
            )
        if resp.status_code >= 400:
            logger.warning(
                "reservation_lookup_failed",
                reservation_id=reservation_id,
                http_status=resp.status_code,
            )
            return TripContext(reservation_id=reservation_id)
        data = resp.json()
        return TripContext.model_validate({**data, "reservation_id": reservation_id})


class HttpDriverWallet(_CollaboratorClient):
    """Every call carries the transaction reference as idempotency key."""

    async def get_balance(self, account_id: str) -> Decimal:
        if not self.base_url:
            raise SettlementError("Wallet service not configured", reference=account_id)
        try:
            resp = await self._request("GET", f"wallets/{account_id}/balance")
        except httpx.HTTPError as exc:
            raise SettlementError(f"Wallet service unreachable: {exc}", reference=account_id) from exc
        if resp.status_code >= 400:
            raise SettlementError(
                f"Wallet service answered HTTP {resp.status_code}",
                reference=account_id,
                details={"http_status": resp.status_code, "operation": "balance"},
            )
        try:
            return to_decimal(resp.json()["balance"])
        except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
            raise SettlementError("Wallet balance is unreadable", reference=account_id) from exc

    async def debit_commission(self, account_id: str, amount: Decimal, reference: str) -> None:
        await self._post("debits", account_id, amount, reference)

    async def credit_earnings(self, account_id: str, amount: Decimal, reference: str) -> None:
        await self._post("credits", account_id, amount, reference)

    async def _post(self, path: str, account_id: str, amount: Decimal, reference: str) -> None:
        if not self.base_url:
            raise SettlementError("Wallet service not configured", reference=reference)
        payload = {"account_id": account_id, "amount": str(amount), "reference": reference}
        try:
            resp = await self._request(
                "POST",
                f"wallets/{account_id}/{path}",
                json=payload,
                headers={"Idempotency-Key": reference},
            )
        except httpx.HTTPError as exc:
            raise SettlementError(
                f"Wallet service unreachable: {exc}", reference=reference
            ) from exc
        # 409: the wallet already booked this reference
        if resp.status_code == 409:
            logger.info("wallet_operation_already_applied", reference=reference, operation=path)
            return
        if resp.status_code >= 400:
            raise SettlementError(
                f"Wallet service answered HTTP {resp.status_code}",
                reference=reference,
                details={"http_status": resp.status_code, "operation": path},
            )
        logger.info("wallet_operation_applied", reference=reference, operation=path, amount=str(amount))


class LoggingNotifier:
    """Notifications are emitted as structured log events for downstream shipping."""

    async def payment_completed(
        self, reference: str, payee_id: Optional[str], receipt_number: Optional[str]
    ) -> None:
        logger.info(
            "notify_payment_completed",
            reference=reference,
            payee_id=payee_id,
            receipt_number=receipt_number,
        )

    async def operator_review(self, reference: str, reason: Optional[str]) -> None:
        logger.warning("notify_operator_review", reference=reference, reason=reason)


def build_reservation_lookup(
    config: CollaboratorSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> HttpReservationLookup:
    return HttpReservationLookup(config.reservation_service_url, timeout=config.timeout, transport=transport)


def build_driver_wallet(
    config: CollaboratorSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> HttpDriverWallet:
    return HttpDriverWallet(config.wallet_service_url, timeout=config.timeout, transport=transport)

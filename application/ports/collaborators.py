"""
Narrow collaborator ports consumed by the payment use-cases.

Reservation, wallet and notification concerns live in other services; the
settlement engine only sees these protocols.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel


class TripContext(BaseModel):
    reservation_id: str
    departure_at: Optional[datetime] = None
    distance_km: Optional[float] = None
    driver_rating: Optional[float] = None
    trips_this_month: Optional[int] = None


@runtime_checkable
class ReservationLookup(Protocol):
    async def get_trip_context(self, reservation_id: str) -> TripContext: ...


@runtime_checkable
class DriverWallet(Protocol):
    """Ledger operations keyed by the transaction reference (idempotent on the wallet side).

    Failures are reported as SettlementError.
    """

    async def get_balance(self, account_id: str) -> Decimal: ...

    async def debit_commission(self, account_id: str, amount: Decimal, reference: str) -> None: ...

    async def credit_earnings(self, account_id: str, amount: Decimal, reference: str) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    async def payment_completed(self, reference: str, payee_id: Optional[str], receipt_number: Optional[str]) -> None: ...

    async def operator_review(self, reference: str, reason: Optional[str]) -> None: ...


@runtime_checkable
class SettlementScheduler(Protocol):
    """Queues asynchronous commission settlement for a completed payment."""

    def schedule_settlement(self, reference: str) -> None: ...

"""
Payment repository interface - abstract persistence for the payment aggregate
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .entity import Payment, PaymentStatus


@dataclass(frozen=True)
class CommissionTotals:
    """Aggregate of COMPLETE payments sharing a method and a collection status"""

    method: str
    collection_status: str
    count: int
    total_amount: Decimal
    commission_amount: Decimal


class PaymentRepository(ABC):
    """Payment repository interface"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """Insert a new payment; raises PaymentReferenceConflict on a duplicate reference"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_reference_for_update(self, reference: str) -> Optional[Payment]:
        """Load a payment and lock its row until the surrounding transaction ends"""
        pass

    @abstractmethod
    async def exists_by_reference(self, reference: str) -> bool:
        pass

    @abstractmethod
    async def find_active_for_reservation(self, reservation_id: str) -> Optional[Payment]:
        """Latest PENDING, PROCESSING or COMPLETE payment attached to a reservation"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """
        Persist a modified payment.

        The stored version must equal payment.version, otherwise
        ConcurrentUpdateError is raised. The returned entity carries the new version.
        """
        pass

    @abstractmethod
    async def list_stale_pending(self, initiated_before: datetime, limit: int = 100) -> List[Payment]:
        """Mobile-money payments still PENDING that were initiated before the cutoff"""
        pass

    @abstractmethod
    async def list_commission_candidates(
        self,
        *,
        pending_before: datetime,
        due_at: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        """
        COMPLETE payments whose commission must be (re)collected.

        Failed collections are returned once next_attempt_at <= due_at; pending ones
        once completed before pending_before. Manual-review payments are excluded.
        """
        pass

    @abstractmethod
    async def list_by_status(self, statuses: Sequence[PaymentStatus], limit: int = 100) -> List[Payment]:
        pass

    @abstractmethod
    async def list_unsettled(self, limit: int = 100) -> List[Payment]:
        """Payments not logically closed: in flight, or COMPLETE with commission not collected"""
        pass

    @abstractmethod
    async def daily_mobile_money_usage(self, payer_id: str, since: datetime) -> Tuple[Decimal, int]:
        """
        Sum and count of the payer's mobile-money payments initiated at or after `since`.

        Only PENDING, PROCESSING and COMPLETE payments count against the recharge limits.
        """
        pass

    @abstractmethod
    async def commission_totals(self, start: datetime, end: datetime) -> List[CommissionTotals]:
        """COMPLETE payments completed within [start, end], grouped by method and collection status"""
        pass

    @abstractmethod
    async def list_for_party(self, user_id: str, *, limit: int = 20, offset: int = 0) -> Tuple[List[Payment], int]:
        """Payments where the user is payer or payee, newest first, with the total match count"""
        pass

"""Unit of work abstraction"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import PaymentRepository


class AbstractUnitOfWork(ABC):
    """Transaction boundary used by the application layer"""

    payment_repository: PaymentRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.payment_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # commit automatically unless readonly or already committed
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the transaction"""
        ...

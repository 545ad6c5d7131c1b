"""SQLAlchemy unit of work"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.payment_repository import SQLAlchemyPaymentRepository


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """Unit of work over an AsyncSession"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.payment_repository = SQLAlchemyPaymentRepository(self.session)
        # only writable units open a transaction explicitly
        if not self._readonly:
            self._transaction = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            # the transaction normally ends on commit/rollback; close it only if still active
            tx = getattr(self, "_transaction", None)
            if tx is not None and getattr(tx, "is_active", False):
                res = tx.close()
                if inspect.isawaitable(res):
                    await res
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self.payment_repository = None

    async def commit(self) -> None:
        if self._readonly:
            # readonly: never commit
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False


def sqlalchemy_uow_factory(session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
    """Return a uow_factory for the application services (accepts readonly=)"""

    def factory(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)

    return factory

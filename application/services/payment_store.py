"""
Locked read-modify-write access to a single payment.

Every mutation of a payment goes through `PaymentStore.edit`: the record lock is
held for the whole unit of work, the status read under the lock is handed to the
transition validator, and the record is only written back when it changed.
"""
from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from application.ports.locking import RecordLocker
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus
from domain.payment.exceptions import InvalidTransitionError, PaymentNotFoundException
from domain.payment.repository import PaymentRepository
from domain.payment.service import PaymentRecordManager


logger = get_logger(__name__)


RecordsFactory = Callable[[PaymentRepository], PaymentRecordManager]


@dataclass
class PaymentSession:
    payment: Payment
    previous_status: PaymentStatus
    records: PaymentRecordManager
    uow: AbstractUnitOfWork

    def events(self) -> list:
        return self.records.get_domain_events()


class PaymentStore:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        locker: RecordLocker,
        records_factory: RecordsFactory,
    ) -> None:
        self._uow_factory = uow_factory
        self._locker = locker
        self._records_factory = records_factory

    async def get(self, payment_id: int) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def get_by_reference(self, reference: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_reference(reference)
        if payment is None:
            raise PaymentNotFoundException(reference)
        return payment

    @asynccontextmanager
    async def edit(self, reference: str) -> AsyncIterator[PaymentSession]:
        """
        Yield the locked payment.

        A rejected transition raised inside the block is re-raised only after the
        unit of work committed, so the error entry it appended is kept.
        """
        rejected: Optional[InvalidTransitionError] = None
        async with self._locker.lock(reference):
            async with self._uow_factory() as uow:
                payment = await uow.payment_repository.get_by_reference_for_update(reference)
                if payment is None:
                    raise PaymentNotFoundException(reference)
                snapshot = copy.deepcopy(payment)
                session = PaymentSession(
                    payment=payment,
                    previous_status=payment.status,
                    records=self._records_factory(uow.payment_repository),
                    uow=uow,
                )
                try:
                    yield session
                except InvalidTransitionError as exc:
                    rejected = exc
                if session.payment != snapshot:
                    session.payment = await session.records.persist(session.payment)
                    if session.payment.status is not session.previous_status:
                        logger.info(
                            "payment_transition_applied",
                            reference=reference,
                            from_status=session.previous_status.value,
                            to_status=session.payment.status.value,
                            version=session.payment.version,
                        )
        if rejected is not None:
            logger.warning(
                "payment_transition_rejected",
                reference=reference,
                from_status=rejected.from_status,
                to_status=rejected.to_status,
            )
            raise rejected

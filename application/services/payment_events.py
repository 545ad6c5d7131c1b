"""
Post-commit handling of payment domain events.

Runs after the unit of work committed; a failing handler is logged and never
undoes the state change that produced the event.
"""
from __future__ import annotations

from typing import Iterable

from application.ports.collaborators import Notifier, SettlementScheduler
from core.logging_config import get_logger
from domain.payment.events import (
    CommissionCollected,
    CommissionReviewRequired,
    PaymentCompleted,
    PaymentEvent,
    PaymentFailed,
    PaymentRefunded,
)


logger = get_logger(__name__)


class PaymentEventDispatcher:
    def __init__(self, notifier: Notifier, scheduler: SettlementScheduler) -> None:
        self._notifier = notifier
        self._scheduler = scheduler

    async def publish(self, events: Iterable[PaymentEvent]) -> None:
        for event in events:
            try:
                await self._handle(event)
            except Exception as exc:
                logger.error(
                    "payment_event_handler_failed",
                    event=type(event).__name__,
                    reference=event.transaction_reference,
                    error=str(exc),
                    exc_info=True,
                )

    async def _handle(self, event: PaymentEvent) -> None:
        if isinstance(event, PaymentCompleted):
            self._scheduler.schedule_settlement(event.transaction_reference)
            await self._notifier.payment_completed(
                event.transaction_reference, event.payee_id, event.receipt_number
            )
        elif isinstance(event, CommissionReviewRequired):
            logger.warning(
                "commission_manual_review",
                reference=event.transaction_reference,
                attempts=event.attempts,
                reason=event.reason,
            )
            await self._notifier.operator_review(event.transaction_reference, event.reason)
        elif isinstance(event, CommissionCollected):
            logger.info("commission_collected", reference=event.transaction_reference, amount=event.amount)
        elif isinstance(event, PaymentRefunded):
            logger.info(
                "payment_refunded",
                reference=event.transaction_reference,
                refunded_amount=event.refunded_amount,
                fee=event.fee,
            )
        elif isinstance(event, PaymentFailed):
            logger.info("payment_failed", reference=event.transaction_reference, reason=event.reason)

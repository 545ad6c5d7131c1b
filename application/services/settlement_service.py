"""
Commission settlement and the periodic reconciliation sweep.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from application.dtos.payments import CommissionOutcome, ReconciliationReport, WebhookOutcome
from application.ports.collaborators import DriverWallet
from application.services.payment_service import PaymentApplicationService
from application.services.payment_store import PaymentSession
from core.logging_config import get_logger
from domain.payment.entity import CollectionMode, CollectionStatus, Payment, PaymentStatus
from domain.payment.events import CommissionCollected, CommissionReviewRequired
from domain.payment.exceptions import SettlementError
from domain.payment.state_machine import TransitionCause


logger = get_logger(__name__)


class SettlementService:
    """
    Settlement service

    - collects the platform commission of completed payments through the driver wallet
    - retries failed collections with exponential backoff, then flags them for review
    - sweeps stale pending payments by polling the gateway
    """

    def __init__(
        self,
        payments: PaymentApplicationService,
        wallet: DriverWallet,
        *,
        pending_threshold: timedelta = timedelta(minutes=30),
        commission_threshold: timedelta = timedelta(minutes=10),
        batch_size: int = 100,
    ) -> None:
        self._payments = payments
        self._wallet = wallet
        self.pending_threshold = pending_threshold
        self.commission_threshold = commission_threshold
        self.batch_size = batch_size

    async def settle_commission(self, reference: str) -> CommissionOutcome:
        """
        Collect the commission of one payment.

        The record lock is held to decide and to apply the result, never across the
        wallet call. The wallet is keyed by the transaction reference, so a call
        repeated by a concurrent worker or after a crash does not move money twice.
        """
        async with self._payments.store.edit(reference) as session:
            payment = session.payment
            outcome = self._precheck(payment)
        if outcome is not None:
            return outcome

        failure: Optional[SettlementError] = None
        try:
            await self._collect(payment)
        except SettlementError as exc:
            failure = exc

        async with self._payments.store.edit(reference) as session:
            outcome = self._apply_collection(session, failure)
        await self._payments.publish(session)
        return outcome

    @staticmethod
    def _precheck(payment: Payment) -> Optional[CommissionOutcome]:
        record = payment.commission
        if payment.status is not PaymentStatus.COMPLETE:
            return CommissionOutcome.SKIPPED
        if record.collection_status is CollectionStatus.COLLECTED:
            return CommissionOutcome.ALREADY_COLLECTED
        if record.manual_review:
            return CommissionOutcome.MANUAL_REVIEW
        return None

    def _apply_collection(self, session: PaymentSession, failure: Optional[SettlementError]) -> CommissionOutcome:
        engine = self._payments.commission_engine
        payment = session.payment
        record = payment.commission
        reference = payment.transaction_reference
        moment = self._payments.now()

        # another worker may have settled or escalated the record meanwhile
        if record.collection_status is CollectionStatus.COLLECTED:
            return CommissionOutcome.ALREADY_COLLECTED
        if failure is None:
            engine.mark_collected(payment, now=moment)
            session.records.events.append(
                CommissionCollected(transaction_reference=reference, amount=str(record.amount))
            )
            return CommissionOutcome.COLLECTED
        if record.manual_review:
            return CommissionOutcome.MANUAL_REVIEW

        exhausted = engine.mark_failed(payment, failure.message, now=moment)
        logger.warning(
            "commission_collection_failed",
            reference=reference,
            attempts=record.attempts,
            next_attempt_at=record.next_attempt_at.isoformat() if record.next_attempt_at else None,
            error=failure.message,
        )
        if not exhausted:
            return CommissionOutcome.FAILED
        session.records.events.append(
            CommissionReviewRequired(
                transaction_reference=reference,
                attempts=record.attempts,
                reason=failure.message,
            )
        )
        return CommissionOutcome.MANUAL_REVIEW

    async def _collect(self, payment: Payment) -> None:
        reference = payment.transaction_reference
        if payment.commission.collection_mode is CollectionMode.RECHARGE_ACCOUNT:
            # cash trip: the driver holds the money, the commission comes out of their account
            balance = await self._wallet.get_balance(payment.payee_id)
            if balance < payment.platform_commission:
                raise SettlementError(
                    f"Insufficient balance: {balance} < {payment.platform_commission}",
                    reference=reference,
                    details={"balance": str(balance), "commission": str(payment.platform_commission)},
                )
            await self._wallet.debit_commission(payment.payee_id, payment.platform_commission, reference)
        else:
            await self._wallet.credit_earnings(payment.payee_id, payment.driver_amount, reference)

    async def reconcile(
        self,
        now: Optional[datetime] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> ReconciliationReport:
        """
        One sweep over stale pending payments and due commission collections.

        A failure on one payment is recorded in the report and the sweep moves on.
        Setting `stop` ends the sweep between two payments.
        """
        moment = now or self._payments.now()
        report = ReconciliationReport(started_at=moment)
        async with self._payments.uow_factory(readonly=True) as uow:
            stale = await uow.payment_repository.list_stale_pending(
                moment - self.pending_threshold, limit=self.batch_size
            )
            candidates = await uow.payment_repository.list_commission_candidates(
                pending_before=moment - self.commission_threshold,
                due_at=moment,
                limit=self.batch_size,
            )
        logger.info("reconciliation_sweep_started", stale=len(stale), commission_candidates=len(candidates))

        for payment in stale:
            if stop is not None and stop.is_set():
                report.interrupted = True
                break
            reference = payment.transaction_reference
            report.polled += 1
            try:
                result = await self._payments.poll(reference, cause=TransitionCause.RECONCILIATION)
            except Exception as exc:
                report.errors += 1
                report.failed_references.append(reference)
                logger.error("reconciliation_poll_failed", reference=reference, error=str(exc), exc_info=True)
                continue
            if result.outcome is WebhookOutcome.APPLIED:
                report.transitioned += 1

        for payment in candidates:
            if report.interrupted or (stop is not None and stop.is_set()):
                report.interrupted = True
                break
            reference = payment.transaction_reference
            try:
                outcome = await self.settle_commission(reference)
            except Exception as exc:
                report.errors += 1
                report.failed_references.append(reference)
                logger.error("reconciliation_settlement_failed", reference=reference, error=str(exc), exc_info=True)
                continue
            if outcome is CommissionOutcome.COLLECTED:
                report.commissions_collected += 1
            elif outcome is CommissionOutcome.FAILED:
                report.commissions_failed += 1
            elif outcome is CommissionOutcome.MANUAL_REVIEW:
                report.manual_review += 1

        report.finished_at = self._payments.now()
        logger.info("reconciliation_sweep_finished", **report.model_dump(mode="json", exclude={"started_at", "finished_at"}))
        return report

"""
Application service orchestrating payment use-cases.

Depends only on application ports (gateway, locker, collaborators) and the payment
domain. Gateway implementations are injected from the composition root (API/tasks),
keeping dependencies one-way. Outbound gateway calls never run while a record lock
is held; the result is applied afterwards under the lock.
"""
from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from application.dtos.payments import (
    CommissionStats,
    CommissionStatsLine,
    CommissionView,
    CreateRecharge,
    CreateTripPayment,
    GatewayInitiation,
    InitiateMobilePayment,
    InitiationRequest,
    IntegrityView,
    MethodEligibility,
    NormalizedStatus,
    PaymentPage,
    PaymentSummary,
    RefundCause,
    RefundPayment,
    StatusCheck,
    WebhookOutcome,
    WebhookResult,
)
from application.ports.collaborators import DriverWallet, ReservationLookup
from application.ports.locking import RecordLocker
from application.ports.payment_gateway import MobileMoneyGateway
from application.services.payment_events import PaymentEventDispatcher
from application.services.payment_store import PaymentSession, PaymentStore
from core.logging_config import bind_payment_context, get_logger
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.commission import CommissionEngine, RateQuote
from domain.payment.eligibility import RechargeLimits, allowed_methods, validate_operator_phone
from domain.payment.entity import (
    GatewayStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
    quantize_money,
    to_decimal,
    utc_now,
)
from domain.payment.exceptions import (
    GatewayRejectedError,
    InsufficientBalanceError,
    InvalidTransitionError,
    PaymentNotFoundException,
)
from domain.payment.refund_policy import RefundPolicy
from domain.payment.repository import PaymentRepository
from domain.payment.service import PaymentRecordManager, RecordPolicy
from domain.payment.state_machine import TransitionCause


logger = get_logger(__name__)


def to_summary(payment: Payment) -> PaymentSummary:
    record = payment.commission
    return PaymentSummary(
        id=payment.id,
        reference=payment.transaction_reference,
        kind=payment.kind.value,
        reservation_id=payment.reservation_id,
        payer_id=payment.payer_id,
        payee_id=payment.payee_id,
        currency=payment.currency,
        total_amount=payment.total_amount,
        driver_amount=payment.driver_amount,
        platform_commission=payment.platform_commission,
        transaction_fee=payment.transaction_fee,
        method=payment.method.value,
        status=payment.status.value,
        commission=CommissionView(
            rate=record.rate,
            amount=record.amount,
            collection_mode=record.collection_mode.value,
            collection_status=record.collection_status.value,
            attempts=record.attempts,
            manual_review=record.manual_review,
            next_attempt_at=record.next_attempt_at,
        ),
        initiated_at=payment.initiated_at,
        processed_at=payment.processed_at,
        completed_at=payment.completed_at,
        receipt_number=payment.receipt_number,
        receipt_url=payment.receipt_url,
        refunded_amount=payment.refund.refunded_amount if payment.refund else None,
        refund_fee=payment.refund.fee if payment.refund else None,
    )


class PaymentApplicationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: MobileMoneyGateway,
        locker: RecordLocker,
        *,
        reservations: ReservationLookup,
        dispatcher: PaymentEventDispatcher,
        commission_engine: Optional[CommissionEngine] = None,
        refund_policy: Optional[RefundPolicy] = None,
        record_policy: Optional[RecordPolicy] = None,
        wallet: Optional[DriverWallet] = None,
        recharge_limits: Optional[RechargeLimits] = None,
        cash_minimum_balance: Decimal = Decimal("0"),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._locker = locker
        self._reservations = reservations
        self._dispatcher = dispatcher
        self.commission_engine = commission_engine or CommissionEngine()
        self.refund_policy = refund_policy or RefundPolicy()
        self.record_policy = record_policy or RecordPolicy()
        self._wallet = wallet
        self.recharge_limits = recharge_limits or RechargeLimits()
        self.cash_minimum_balance = to_decimal(cash_minimum_balance)
        self._clock = clock
        self.store = PaymentStore(uow_factory, locker, self.records_for)

    def records_for(self, repository: PaymentRepository) -> PaymentRecordManager:
        return PaymentRecordManager(repository, self.commission_engine, self.record_policy)

    @property
    def uow_factory(self) -> Callable[..., AbstractUnitOfWork]:
        return self._uow_factory

    def now(self) -> datetime:
        return self._clock()

    async def publish(self, session: PaymentSession) -> None:
        await self._dispatcher.publish(session.events())

    # --- creation -------------------------------------------------------------

    async def create_trip_payment(self, req: CreateTripPayment) -> PaymentSummary:
        """Create (or return the still-active) payment for a reservation."""
        context = await self._reservations.get_trip_context(req.reservation_id)
        quote = self.commission_engine.compute_rate(
            distance_km=context.distance_km,
            driver_rating=context.driver_rating,
            trips_this_month=context.trips_this_month,
        )
        if quote.clamped:
            logger.warning(
                "commission_rate_clamped",
                reservation_id=req.reservation_id,
                rate=str(quote.rate),
                adjustments={k: str(v) for k, v in quote.adjustments.items()},
            )
        if req.method is PaymentMethod.CASH:
            await self._ensure_cash_allowed(req.payee_id, self._expected_commission(req.amount, quote))

        async with self._locker.lock(f"reservation:{req.reservation_id}"):
            async with self._uow_factory() as uow:
                existing = await uow.payment_repository.find_active_for_reservation(req.reservation_id)
                if existing is not None:
                    logger.info(
                        "payment_reused",
                        reservation_id=req.reservation_id,
                        reference=existing.transaction_reference,
                        status=existing.status.value,
                    )
                    return to_summary(existing)
                payment = await self._create(uow, req.payer_id, req.payee_id, req, quote)

        logger.info(
            "payment_created",
            reference=payment.transaction_reference,
            kind=payment.kind.value,
            method=payment.method.value,
            total_amount=str(payment.total_amount),
            commission_rate=str(payment.commission.rate),
        )
        return to_summary(payment)

    async def create_recharge(self, req: CreateRecharge) -> PaymentSummary:
        """Top up the user's own account, within the daily amount and count limits."""
        since = self.now().replace(hour=0, minute=0, second=0, microsecond=0)
        async with self._locker.lock(f"recharge:{req.user_id}"):
            async with self._uow_factory() as uow:
                used_amount, used_count = await uow.payment_repository.daily_mobile_money_usage(req.user_id, since)
                try:
                    self.recharge_limits.check(used_amount, used_count, to_decimal(req.amount))
                except DomainValidationException:
                    logger.warning(
                        "recharge_limit_reached",
                        user_id=req.user_id,
                        used_amount=str(used_amount),
                        used_count=used_count,
                    )
                    raise
                payment = await self._create(uow, req.user_id, req.user_id, req, None)
        logger.info(
            "payment_created",
            reference=payment.transaction_reference,
            kind=payment.kind.value,
            method=payment.method.value,
            total_amount=str(payment.total_amount),
        )
        return to_summary(payment)

    async def _create(
        self,
        uow: AbstractUnitOfWork,
        payer_id: str,
        payee_id: str,
        req: CreateTripPayment | CreateRecharge,
        quote: Optional[RateQuote],
    ) -> Payment:
        records = self.records_for(uow.payment_repository)
        return await records.create(
            payer_id,
            payee_id,
            req.amount,
            req.method,
            getattr(req, "reservation_id", None),
            rate=quote,
            customer_phone=req.customer_phone,
            now=self.now(),
        )

    def _expected_commission(self, amount: Decimal, quote: Optional[RateQuote]) -> Decimal:
        rate = quote.rate if quote is not None else self.commission_engine.rules.base_rate
        return quantize_money(to_decimal(amount) * rate, self.commission_engine.rules.money_quantum)

    async def _ensure_cash_allowed(self, payee_id: str, commission: Decimal) -> None:
        """Cash trips are debited from the driver's prepaid balance; refuse them up front when it is short."""
        if self._wallet is None:
            return
        balance = await self._wallet.get_balance(payee_id)
        if PaymentMethod.CASH not in allowed_methods(balance, commission, self.cash_minimum_balance):
            logger.warning(
                "cash_payment_refused",
                payee_id=payee_id,
                balance=str(balance),
                commission=str(commission),
                minimum_balance=str(self.cash_minimum_balance),
            )
            raise InsufficientBalanceError(payee_id, balance, max(commission, self.cash_minimum_balance))

    # --- gateway --------------------------------------------------------------

    async def initiate(self, reference: str, req: InitiateMobilePayment) -> GatewayInitiation:
        """
        Register the payment with the gateway.

        A token already obtained for a PENDING/PROCESSING payment is returned as is.
        Network failures leave the payment untouched; a provider rejection marks it FAILED.
        """
        bind_payment_context(reference=reference)
        payment = await self.store.get_by_reference(reference)
        if not payment.is_mobile_money:
            raise DomainValidationException("Cash payments are not initiated with the gateway", field="method")
        record = payment.mobile_money
        if payment.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING) and record.gateway_token:
            return GatewayInitiation(
                transaction_reference=reference,
                payment_url=record.payment_url,
                payment_token=record.gateway_token,
                reused=True,
            )
        if payment.status is not PaymentStatus.PENDING:
            raise DomainValidationException(
                f"Payment in status {payment.status.value} cannot be initiated",
                field="status",
            )
        validate_operator_phone(req.customer_phone, req.operator or record.operator)

        request = InitiationRequest(
            transaction_reference=reference,
            amount=payment.total_amount,
            currency=payment.currency,
            description=req.description or f"Payment {reference}",
            customer_phone=req.customer_phone,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            operator=req.operator or record.operator,
        )
        logger.info("payment_initiate_request", reference=reference, provider=self.gateway.provider)
        result = await self.gateway.initiate(request)
        logger.info(
            "payment_initiate_response",
            reference=reference,
            accepted=result.accepted,
            provider_code=result.provider_code,
        )

        rejected: Optional[GatewayRejectedError] = None
        async with self.store.edit(reference) as session:
            current = session.payment
            moment = self.now()
            if result.accepted:
                mm = current.mobile_money
                if current.status is PaymentStatus.PENDING and not mm.gateway_token:
                    mm.gateway_token = result.payment_token
                    mm.payment_url = result.payment_url
                    mm.customer_phone = req.customer_phone
                    if req.operator is not None:
                        mm.operator = req.operator
                    current.add_log(
                        "GATEWAY_INITIATED",
                        {"provider": result.provider, "provider_code": result.provider_code},
                        now=moment,
                    )
            elif current.status is PaymentStatus.PENDING:
                current.mobile_money.gateway_status = GatewayStatus.FAILED
                current.add_error(
                    "GATEWAY_REJECTED",
                    result.message or "Initiation rejected by the provider",
                    {"provider": result.provider, "provider_code": result.provider_code},
                    now=moment,
                )
                session.records.transition(
                    current,
                    PaymentStatus.FAILED,
                    TransitionCause.INITIATION,
                    previous_status=session.previous_status,
                    now=moment,
                    details={"reason": result.message, "provider_code": result.provider_code},
                )
                rejected = GatewayRejectedError(
                    result.message or "Initiation rejected by the provider",
                    provider=result.provider,
                    provider_code=result.provider_code,
                )
        await self.publish(session)
        if rejected is not None:
            raise rejected

        stored = session.payment.mobile_money
        return GatewayInitiation(
            transaction_reference=reference,
            payment_url=stored.payment_url,
            payment_token=stored.gateway_token,
            reused=stored.gateway_token != result.payment_token,
        )

    async def handle_webhook(self, headers: dict, body: bytes) -> WebhookResult:
        """Authenticate, normalize and apply a provider notification. Repeats are no-ops."""
        event = self.gateway.parse_webhook(headers, body)
        bind_payment_context(reference=event.transaction_reference)
        logger.info(
            "payment_webhook_received",
            reference=event.transaction_reference,
            provider=event.provider,
            status=event.status.value,
            provider_result=event.provider_result,
        )
        return await self.apply_gateway_status(event, TransitionCause.WEBHOOK)

    async def poll(self, reference: str, cause: TransitionCause = TransitionCause.POLL) -> WebhookResult:
        """Ask the gateway for the status of an open mobile-money payment and apply it."""
        payment = await self.store.get_by_reference(reference)
        if not payment.is_mobile_money:
            raise DomainValidationException("Cash payments have no gateway status", field="method")
        if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            return WebhookResult(
                transaction_reference=reference,
                outcome=WebhookOutcome.IGNORED,
                status=payment.status.value,
            )
        check = await self.gateway.poll_status(reference)
        logger.info(
            "payment_poll_response",
            reference=reference,
            status=check.status.value,
            provider_result=check.provider_result,
            cause=cause.value,
        )
        return await self.apply_gateway_status(check, cause)

    async def apply_gateway_status(self, report: StatusCheck, cause: TransitionCause) -> WebhookResult:
        reference = report.transaction_reference
        async with self.store.edit(reference) as session:
            outcome = self._apply_report(session, report, cause)
        await self.publish(session)
        logger.info(
            "payment_gateway_status_applied",
            reference=reference,
            outcome=outcome.value,
            status=session.payment.status.value,
            cause=cause.value,
        )
        return WebhookResult(
            transaction_reference=reference,
            outcome=outcome,
            status=session.payment.status.value,
        )

    def _apply_report(self, session: PaymentSession, report: StatusCheck, cause: TransitionCause) -> WebhookOutcome:
        payment = session.payment
        current = session.previous_status
        moment = self.now()

        if current is PaymentStatus.REFUNDED or not payment.is_mobile_money:
            return WebhookOutcome.IGNORED

        if report.status is NormalizedStatus.ACCEPTED:
            if current is PaymentStatus.COMPLETE:
                return WebhookOutcome.DUPLICATE
            if report.amount is not None and report.amount != payment.total_amount:
                payment.add_error(
                    "AMOUNT_MISMATCH",
                    "Gateway reported a different amount",
                    {
                        "expected": str(payment.total_amount),
                        "reported": str(report.amount),
                        "cause": cause.value,
                    },
                    now=moment,
                )
                logger.warning(
                    "payment_amount_mismatch",
                    reference=payment.transaction_reference,
                    expected=str(payment.total_amount),
                    reported=str(report.amount),
                )
                return WebhookOutcome.AMOUNT_MISMATCH
            details = {"provider_payment_id": report.provider_payment_id}
            try:
                if current is PaymentStatus.PENDING:
                    session.records.transition(
                        payment, PaymentStatus.PROCESSING, cause, previous_status=current, now=moment, details=details
                    )
                    current = PaymentStatus.PROCESSING
                if current is PaymentStatus.PROCESSING:
                    self._record_gateway_success(payment, report, moment)
                session.records.transition(
                    payment, PaymentStatus.COMPLETE, cause, previous_status=current, now=moment, details=details
                )
            except InvalidTransitionError:
                return WebhookOutcome.REJECTED
            return WebhookOutcome.APPLIED

        if report.status is NormalizedStatus.REFUSED:
            if current is PaymentStatus.FAILED:
                return WebhookOutcome.DUPLICATE
            try:
                session.records.transition(
                    payment,
                    PaymentStatus.FAILED,
                    cause,
                    previous_status=current,
                    now=moment,
                    details={"reason": report.provider_result},
                )
            except InvalidTransitionError:
                return WebhookOutcome.REJECTED
            payment.mobile_money.gateway_status = GatewayStatus.FAILED
            payment.add_error(
                "WEBHOOK_REFUSED" if cause is TransitionCause.WEBHOOK else "POLL_REFUSED",
                f"Payment refused ({cause.value})",
                {"provider_result": report.provider_result},
                now=moment,
            )
            return WebhookOutcome.APPLIED

        logger.info(
            "payment_gateway_status_unchanged",
            reference=payment.transaction_reference,
            status=report.status.value,
            provider_result=report.provider_result,
        )
        return WebhookOutcome.IGNORED

    @staticmethod
    def _record_gateway_success(payment: Payment, report: StatusCheck, moment: datetime) -> None:
        record = payment.mobile_money
        record.gateway_status = GatewayStatus.SUCCESS
        record.gateway_transaction_id = report.provider_payment_id or record.gateway_transaction_id
        if report.operator is not None:
            record.operator = report.operator
        if report.customer_phone:
            record.customer_phone = report.customer_phone
        record.transaction_at = report.occurred_at or moment
        payment.add_log(
            "GATEWAY_CONFIRMED",
            {"provider": report.provider, "provider_payment_id": report.provider_payment_id},
            now=moment,
        )

    # --- manual operations ----------------------------------------------------

    async def confirm_cash_payment(self, reference: str) -> PaymentSummary:
        """The driver confirms the cash was handed over."""
        async with self.store.edit(reference) as session:
            payment = session.payment
            if payment.is_mobile_money:
                raise DomainValidationException("Only cash payments are confirmed by hand", field="method")
            current = session.previous_status
            moment = self.now()
            if current is PaymentStatus.PENDING:
                session.records.transition(
                    payment, PaymentStatus.PROCESSING, TransitionCause.CASH_CONFIRMATION,
                    previous_status=current, now=moment,
                )
                current = PaymentStatus.PROCESSING
            session.records.transition(
                payment, PaymentStatus.COMPLETE, TransitionCause.CASH_CONFIRMATION,
                previous_status=current, now=moment,
            )
        await self.publish(session)
        logger.info("cash_payment_confirmed", reference=reference, status=session.payment.status.value)
        return to_summary(session.payment)

    async def request_refund(self, payment_id: int, req: RefundPayment) -> PaymentSummary:
        """
        Refund a completed payment.

        A cancellation withholds the tiered fee based on the hours left before departure;
        an administrative override refunds in full. Refunding twice is a no-op.
        """
        payment = await self.store.get(payment_id)
        reference = payment.transaction_reference
        hours: Optional[float] = None
        if req.cause is RefundCause.CANCELLATION:
            if payment.reservation_id is None:
                raise DomainValidationException("Recharges are not refunded through a trip cancellation", field="cause")
            context = await self._reservations.get_trip_context(payment.reservation_id)
            if context.departure_at is None:
                raise DomainValidationException("Departure time of the trip is unknown", field="departure_at")
            hours = (context.departure_at - self.now()).total_seconds() / 3600
            cause = TransitionCause.REFUND_REQUEST
        else:
            cause = TransitionCause.ADMIN_OVERRIDE

        async with self.store.edit(reference) as session:
            current = session.payment
            if session.previous_status is not PaymentStatus.REFUNDED:
                moment = self.now()
                split = self.refund_policy.split(current.total_amount, hours)
                if session.previous_status is PaymentStatus.COMPLETE:
                    current.refund = RefundRecord(
                        refunded_amount=split.refunded_amount,
                        fee=split.fee,
                        cause=req.cause.value,
                        refunded_at=moment,
                        hours_before_departure=hours,
                    )
                session.records.transition(
                    current,
                    PaymentStatus.REFUNDED,
                    cause,
                    previous_status=session.previous_status,
                    now=moment,
                    details={
                        "refunded_amount": str(split.refunded_amount),
                        "fee": str(split.fee),
                        "note": req.note,
                    },
                )
        await self.publish(session)
        return to_summary(session.payment)

    async def retry_failed(self, reference: str) -> PaymentSummary:
        """Reopen a FAILED payment so the payer can try again."""
        async with self.store.edit(reference) as session:
            payment = session.payment
            result = session.records.transition(
                payment, PaymentStatus.PENDING, TransitionCause.RETRY,
                previous_status=session.previous_status, now=self.now(),
            )
            if result.applied and payment.mobile_money is not None:
                record = payment.mobile_money
                record.gateway_token = None
                record.payment_url = None
                record.gateway_transaction_id = None
                record.gateway_status = GatewayStatus.PENDING
        await self.publish(session)
        return to_summary(session.payment)

    # --- queries --------------------------------------------------------------

    async def get_payment_summary(self, payment_id: int) -> PaymentSummary:
        return to_summary(await self.store.get(payment_id))

    async def list_pending_for_reconciliation(self, limit: int = 100) -> List[PaymentSummary]:
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_unsettled(limit=limit)
        return [to_summary(p) for p in payments]

    async def list_user_payments(self, user_id: str, page: int = 1, limit: int = 20) -> PaymentPage:
        """Payments the user paid or received, newest first."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        async with self._uow_factory(readonly=True) as uow:
            payments, total = await uow.payment_repository.list_for_party(
                user_id, limit=limit, offset=(page - 1) * limit
            )
        return PaymentPage(
            items=[to_summary(p) for p in payments],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )

    async def allowed_methods(
        self,
        payee_id: str,
        amount: Decimal,
        reservation_id: Optional[str] = None,
    ) -> MethodEligibility:
        quote = None
        if reservation_id is not None:
            context = await self._reservations.get_trip_context(reservation_id)
            quote = self.commission_engine.compute_rate(
                distance_km=context.distance_km,
                driver_rating=context.driver_rating,
                trips_this_month=context.trips_this_month,
            )
        commission = self._expected_commission(amount, quote)
        balance = await self._wallet.get_balance(payee_id) if self._wallet is not None else None
        if balance is None:
            methods = list(PaymentMethod)
        else:
            methods = allowed_methods(balance, commission, self.cash_minimum_balance)
        return MethodEligibility(
            payee_id=payee_id,
            methods=[m.value for m in methods],
            cash_allowed=PaymentMethod.CASH in methods,
            commission=commission,
            minimum_balance=self.cash_minimum_balance,
            balance=balance,
        )

    async def verify_integrity(self, payment_id: int) -> IntegrityView:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            report = self.records_for(uow.payment_repository).verify_integrity(payment)
        if not report.intact:
            logger.warning("payment_integrity_broken", reference=report.reference, issues=list(report.issues))
        return IntegrityView(
            payment_id=payment_id,
            reference=report.reference,
            intact=report.intact,
            issues=list(report.issues),
            expected_commission=report.expected_commission,
            breakdown_delta=report.breakdown_delta,
        )

    async def commission_stats(self, start: datetime, end: datetime) -> CommissionStats:
        """Commission totals of payments completed in [start, end]."""
        if end < start:
            raise DomainValidationException("Period end precedes its start", field="end")
        async with self._uow_factory(readonly=True) as uow:
            rows = await uow.payment_repository.commission_totals(start, end)
        stats = CommissionStats(start=start, end=end)
        for row in rows:
            stats.transaction_count += row.count
            stats.total_processed += row.total_amount
            stats.total_commissions += row.commission_amount
            stats.by_status[row.collection_status] = (
                stats.by_status.get(row.collection_status, Decimal("0")) + row.commission_amount
            )
            stats.by_method[row.method] = stats.by_method.get(row.method, Decimal("0")) + row.commission_amount
            stats.lines.append(CommissionStatsLine(**vars(row)))
        if stats.transaction_count:
            stats.average_amount = quantize_money(
                stats.total_processed / stats.transaction_count, Decimal("0.01")
            )
        return stats

    async def aclose(self) -> None:
        await self.gateway.aclose()

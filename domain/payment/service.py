"""
Payment record manager - domain service owning construction, validation and
persistence of the payment aggregate
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from domain.common.exceptions import DomainValidationException

from .commission import CommissionEngine, RateQuote
from .entity import (
    METHOD_OPERATORS,
    CollectionMode,
    CommissionRecord,
    MobileMoneyRecord,
    MobileOperator,
    Payment,
    PaymentMethod,
    PaymentStatus,
    quantize_money,
    to_decimal,
    utc_now,
)
from .events import PaymentCompleted, PaymentFailed, PaymentRefunded
from .exceptions import PaymentReferenceConflict
from .repository import PaymentRepository
from .state_machine import TransitionCause, TransitionResult, TransitionValidator


@dataclass(frozen=True)
class RecordPolicy:
    min_amount: Decimal = Decimal("100")
    max_amount: Decimal = Decimal("500000")
    mobile_money_fee_rate: Decimal = Decimal("0.025")
    currency: str = "XOF"
    receipt_base_url: str = "http://localhost:8000/receipts"
    reference_attempts: int = 3


@dataclass(frozen=True)
class IntegrityReport:
    reference: str
    intact: bool
    issues: tuple[str, ...]
    expected_commission: Decimal
    breakdown_delta: Decimal


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def generate_transaction_reference(now: Optional[datetime] = None) -> str:
    """PAY_<epoch ms>_<8 upper hex chars>"""
    return f"PAY_{_epoch_ms(now or utc_now())}_{secrets.token_hex(4).upper()}"


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    return f"REC_{_epoch_ms(now or utc_now())}_{secrets.token_hex(3).upper()}"


class PaymentRecordManager:
    """
    Payment record manager

    Responsibilities:
    1. build new payments with a provisional commission split
    2. assign a unique transaction reference (collisions are retried, never overwritten)
    3. re-check the monetary breakdown on every write path
    4. drive status changes through the transition validator and collect domain events
    5. issue the receipt once, on completion
    6. audit stored records (breakdown, commission rounding, receipt)
    """

    def __init__(
        self,
        payment_repository: PaymentRepository,
        commission_engine: CommissionEngine,
        policy: Optional[RecordPolicy] = None,
        *,
        reference_factory: Callable[[datetime], str] = generate_transaction_reference,
    ):
        self.payment_repository = payment_repository
        self.commission_engine = commission_engine
        self.policy = policy or RecordPolicy()
        self._reference_factory = reference_factory
        self.validator = TransitionValidator(receipt_issuer=self.issue_receipt)
        self.events: List = []  # domain events collected during one unit of work

    def build(
        self,
        payer_id: str,
        payee_id: str,
        amount: Decimal | str | int,
        method: PaymentMethod | str,
        reservation_id: Optional[str] = None,
        *,
        rate: Optional[Decimal | RateQuote] = None,
        operator: Optional[MobileOperator] = None,
        customer_phone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        """Build an unsaved PENDING payment. Raises DomainValidationException on bad input."""
        policy = self.policy
        total = to_decimal(amount)
        if total <= 0:
            raise DomainValidationException(f"Amount must be greater than 0: {total}", field="amount")
        if total < policy.min_amount or total > policy.max_amount:
            raise DomainValidationException(
                f"Amount must be between {policy.min_amount} and {policy.max_amount} {policy.currency}",
                field="amount",
                details={"min": str(policy.min_amount), "max": str(policy.max_amount)},
            )
        if not payer_id or not payee_id:
            raise DomainValidationException(
                "Payer and payee must be resolved",
                field="payer_id" if not payer_id else "payee_id",
            )
        method = PaymentMethod(method)
        if reservation_id is None:
            if payer_id != payee_id:
                raise DomainValidationException("A recharge credits the payer's own account", field="payee_id")
            if not method.is_mobile_money:
                raise DomainValidationException("Recharges require a mobile-money method", field="method")

        moment = now or utc_now()
        if method.is_mobile_money:
            fee = quantize_money(total * policy.mobile_money_fee_rate, self.commission_engine.rules.money_quantum)
            mobile_money = MobileMoneyRecord(
                operator=operator or METHOD_OPERATORS[method],
                customer_phone=customer_phone,
            )
            mode = CollectionMode.MOBILE_PAYMENT
        else:
            fee = Decimal("0")
            mobile_money = None
            mode = CollectionMode.RECHARGE_ACCOUNT

        if reservation_id is None:
            # Top-ups carry no platform commission
            rate = Decimal("0")
        elif rate is None:
            rate = self.commission_engine.rules.base_rate

        payment = Payment(
            id=None,
            transaction_reference="",
            payer_id=payer_id,
            payee_id=payee_id,
            reservation_id=reservation_id,
            total_amount=total,
            driver_amount=total - fee,
            platform_commission=Decimal("0"),
            transaction_fee=fee,
            method=method,
            status=PaymentStatus.PENDING,
            currency=policy.currency,
            commission=CommissionRecord(rate=Decimal("0"), amount=Decimal("0"), collection_mode=mode),
            mobile_money=mobile_money,
            initiated_at=moment,
            updated_at=moment,
        )
        self.commission_engine.apply(payment, rate, now=moment)
        return payment

    async def create(
        self,
        payer_id: str,
        payee_id: str,
        amount: Decimal | str | int,
        method: PaymentMethod | str,
        reservation_id: Optional[str] = None,
        *,
        rate: Optional[Decimal | RateQuote] = None,
        operator: Optional[MobileOperator] = None,
        customer_phone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        payment = self.build(
            payer_id,
            payee_id,
            amount,
            method,
            reservation_id,
            rate=rate,
            operator=operator,
            customer_phone=customer_phone,
            now=now,
        )
        reference = ""
        for _attempt in range(max(self.policy.reference_attempts, 1)):
            reference = self._reference_factory(payment.initiated_at)
            if await self.payment_repository.exists_by_reference(reference):
                continue
            payment.transaction_reference = reference
            payment.add_log(
                "PAYMENT_CREATED",
                {
                    "reference": reference,
                    "kind": payment.kind.value,
                    "method": payment.method.value,
                    "total_amount": str(payment.total_amount),
                },
                now=payment.initiated_at,
            )
            self.validate_consistency(payment)
            return await self.payment_repository.create(payment)
        raise PaymentReferenceConflict(reference)

    def validate_consistency(self, payment: Payment) -> None:
        """Monetary breakdown and timestamp ordering; runs before every write."""
        self.commission_engine.validate_breakdown(payment)
        if payment.commission.amount != payment.platform_commission:
            raise DomainValidationException(
                "Commission sub-record disagrees with platform_commission",
                field="commission.amount",
            )
        if not payment.transaction_reference:
            raise DomainValidationException("Transaction reference is missing", field="transaction_reference")
        ordered = [payment.initiated_at, payment.processed_at, payment.completed_at]
        previous = None
        for stamp in ordered:
            if stamp is None:
                continue
            if previous is not None and stamp < previous:
                raise DomainValidationException(
                    "Timestamps must satisfy initiated_at <= processed_at <= completed_at",
                    field="processed_at",
                )
            previous = stamp

    def verify_integrity(self, payment: Payment) -> IntegrityReport:
        """Read-only audit of a stored payment; never raises on a broken record."""
        rules = self.commission_engine.rules
        issues: List[str] = []
        for name in ("total_amount", "driver_amount", "platform_commission", "transaction_fee"):
            if getattr(payment, name) < 0:
                issues.append(f"{name}_negative")
        if abs(payment.breakdown_delta()) > rules.tolerance:
            issues.append("breakdown_mismatch")
        expected = quantize_money(payment.total_amount * payment.commission.rate, rules.money_quantum)
        if payment.platform_commission != expected:
            issues.append("commission_mismatch")
        if payment.commission.amount != payment.platform_commission:
            issues.append("commission_record_mismatch")
        if payment.status is PaymentStatus.COMPLETE and not payment.receipt_number:
            issues.append("receipt_missing")
        return IntegrityReport(
            reference=payment.transaction_reference,
            intact=not issues,
            issues=tuple(issues),
            expected_commission=expected,
            breakdown_delta=payment.breakdown_delta(),
        )

    def issue_receipt(self, payment: Payment, *, now: Optional[datetime] = None) -> bool:
        """Idempotent. Returns True only when a new receipt number was generated."""
        if payment.status is not PaymentStatus.COMPLETE:
            raise DomainValidationException(
                f"Receipts are only issued for complete payments (status {payment.status.value})",
                field="status",
            )
        if payment.receipt_number:
            return False
        moment = now or utc_now()
        number = generate_receipt_number(moment)
        payment.receipt_number = number
        payment.receipt_url = f"{self.policy.receipt_base_url.rstrip('/')}/{number}"
        payment.add_log("RECEIPT_ISSUED", {"receipt_number": number}, now=moment)
        return True

    def transition(
        self,
        payment: Payment,
        target: PaymentStatus,
        cause: TransitionCause,
        *,
        previous_status: PaymentStatus,
        now: Optional[datetime] = None,
        details: Optional[dict] = None,
    ) -> TransitionResult:
        result = self.validator.request_transition(
            payment,
            target,
            cause,
            previous_status=previous_status,
            now=now,
            details=details,
        )
        if not result.applied:
            return result
        reference = payment.transaction_reference
        if target is PaymentStatus.COMPLETE:
            self.events.append(
                PaymentCompleted(
                    transaction_reference=reference,
                    receipt_number=payment.receipt_number,
                    payee_id=payment.payee_id,
                )
            )
        elif target is PaymentStatus.FAILED:
            self.events.append(PaymentFailed(transaction_reference=reference, reason=(details or {}).get("reason")))
        elif target is PaymentStatus.REFUNDED and payment.refund is not None:
            self.events.append(
                PaymentRefunded(
                    transaction_reference=reference,
                    refunded_amount=str(payment.refund.refunded_amount),
                    fee=str(payment.refund.fee),
                )
            )
        return result

    async def persist(self, payment: Payment) -> Payment:
        self.validate_consistency(payment)
        return await self.payment_repository.update(payment)

    def get_domain_events(self) -> List:
        """Return and clear the collected domain events."""
        events = self.events.copy()
        self.events.clear()
        return events

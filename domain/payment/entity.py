"""
Payment domain entity - the payment aggregate root and its sub-records.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


class PaymentStatus(str, Enum):
    """Payment lifecycle status"""
    PENDING = "pending"          # created, waiting for the payer
    PROCESSING = "processing"    # gateway/cash confirmation in progress
    COMPLETE = "complete"        # money received
    FAILED = "failed"            # refused, cancelled or rejected
    REFUNDED = "refunded"        # terminal


class PaymentMethod(str, Enum):
    CASH = "cash"
    WAVE = "wave"
    ORANGE_MONEY = "orange_money"
    MTN_MONEY = "mtn_money"
    MOOV_MONEY = "moov_money"

    @property
    def is_mobile_money(self) -> bool:
        return self is not PaymentMethod.CASH


class MobileOperator(str, Enum):
    WAVE = "wave"
    ORANGE = "orange"
    MTN = "mtn"
    MOOV = "moov"


METHOD_OPERATORS = {
    PaymentMethod.WAVE: MobileOperator.WAVE,
    PaymentMethod.ORANGE_MONEY: MobileOperator.ORANGE,
    PaymentMethod.MTN_MONEY: MobileOperator.MTN,
    PaymentMethod.MOOV_MONEY: MobileOperator.MOOV,
}


class PaymentKind(str, Enum):
    TRIP = "trip"
    RECHARGE = "recharge"


class CollectionMode(str, Enum):
    """How the platform commission is collected"""
    MOBILE_PAYMENT = "mobile_payment"      # withheld from the mobile-money payment
    RECHARGE_ACCOUNT = "recharge_account"  # debited from the driver's prepaid account (cash trips)


class CollectionStatus(str, Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    FAILED = "failed"


class GatewayStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to UTC"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Decimal, quantum: Decimal = Decimal("1")) -> Decimal:
    """Round an amount half-up to the currency quantum (1 for XOF)."""
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


@dataclass
class CommissionRecord:
    """Commission sub-record. Only the commission engine mutates it."""

    rate: Decimal
    amount: Decimal
    collection_mode: CollectionMode
    collection_status: CollectionStatus = CollectionStatus.PENDING
    base_rate: Optional[Decimal] = None
    adjustments: dict[str, str] = field(default_factory=dict)
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    collected_at: Optional[datetime] = None
    last_error: Optional[str] = None
    manual_review: bool = False

    def __post_init__(self):
        self.rate = to_decimal(self.rate)
        self.amount = to_decimal(self.amount)
        if self.base_rate is not None:
            self.base_rate = to_decimal(self.base_rate)
        self.next_attempt_at = _ensure_utc(self.next_attempt_at)
        self.collected_at = _ensure_utc(self.collected_at)

    @property
    def reduction(self) -> Decimal:
        if self.base_rate is None:
            return Decimal("0")
        return self.base_rate - self.rate


@dataclass
class MobileMoneyRecord:
    """Mobile-money sub-record, present only for mobile-money methods."""

    operator: MobileOperator
    customer_phone: Optional[str] = None
    gateway_token: Optional[str] = None
    payment_url: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    gateway_status: GatewayStatus = GatewayStatus.PENDING
    transaction_at: Optional[datetime] = None

    def __post_init__(self):
        self.transaction_at = _ensure_utc(self.transaction_at)


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    action: str
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorEntry:
    timestamp: datetime
    code: str
    message: str
    context: dict = field(default_factory=dict)


@dataclass
class RefundRecord:
    refunded_amount: Decimal
    fee: Decimal
    cause: str
    refunded_at: datetime
    hours_before_departure: Optional[float] = None

    def __post_init__(self):
        self.refunded_amount = to_decimal(self.refunded_amount)
        self.fee = to_decimal(self.fee)
        self.refunded_at = _ensure_utc(self.refunded_at)


@dataclass
class Payment:
    """
    Payment aggregate root - one money movement for a trip or an account top-up

    Business rules:
    1. total_amount == driver_amount + platform_commission + transaction_fee
    2. initiated_at <= processed_at <= completed_at (when present)
    3. status changes go through the transition validator only
    4. the receipt is issued once, on the first COMPLETE
    5. logs and errors are append-only
    """

    id: Optional[int]
    transaction_reference: str
    payer_id: str
    payee_id: str
    total_amount: Decimal
    driver_amount: Decimal
    platform_commission: Decimal
    transaction_fee: Decimal
    method: PaymentMethod
    status: PaymentStatus
    commission: CommissionRecord
    initiated_at: datetime
    reservation_id: Optional[str] = None
    currency: str = "XOF"
    mobile_money: Optional[MobileMoneyRecord] = None

    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    receipt_number: Optional[str] = None
    receipt_url: Optional[str] = None
    refund: Optional[RefundRecord] = None

    logs: list[AuditEntry] = field(default_factory=list)
    errors: list[ErrorEntry] = field(default_factory=list)
    version: int = 0

    def __post_init__(self):
        self.total_amount = to_decimal(self.total_amount)
        self.driver_amount = to_decimal(self.driver_amount)
        self.platform_commission = to_decimal(self.platform_commission)
        self.transaction_fee = to_decimal(self.transaction_fee)
        self._validate_parties()
        self._normalize_timestamps()

    def _validate_parties(self) -> None:
        if not self.payer_id:
            raise DomainValidationException("Payer is required", field="payer_id")
        if not self.payee_id:
            raise DomainValidationException("Payee is required", field="payee_id")

    def _normalize_timestamps(self) -> None:
        self.initiated_at = _ensure_utc(self.initiated_at)
        self.processed_at = _ensure_utc(self.processed_at)
        self.completed_at = _ensure_utc(self.completed_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def kind(self) -> PaymentKind:
        return PaymentKind.TRIP if self.reservation_id else PaymentKind.RECHARGE

    @property
    def is_mobile_money(self) -> bool:
        return self.method.is_mobile_money

    @property
    def is_closed(self) -> bool:
        """REFUNDED, or COMPLETE with the commission collected."""
        if self.status is PaymentStatus.REFUNDED:
            return True
        return (
            self.status is PaymentStatus.COMPLETE
            and self.commission.collection_status is CollectionStatus.COLLECTED
        )

    def breakdown_delta(self) -> Decimal:
        return self.total_amount - (self.driver_amount + self.platform_commission + self.transaction_fee)

    def add_log(self, action: str, details: Optional[dict] = None, *, now: Optional[datetime] = None) -> AuditEntry:
        entry = AuditEntry(timestamp=_ensure_utc(now) or utc_now(), action=action, details=dict(details or {}))
        self.logs.append(entry)
        return entry

    def add_error(
        self,
        code: str,
        message: str,
        context: Optional[dict] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ErrorEntry:
        entry = ErrorEntry(
            timestamp=_ensure_utc(now) or utc_now(),
            code=code,
            message=message,
            context=dict(context or {}),
        )
        self.errors.append(entry)
        return entry

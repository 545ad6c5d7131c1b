"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.types import condecimal

from domain.payment.entity import MobileOperator, PaymentMethod


def _normalize_phone(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    digits = "".join(ch for ch in v if ch.isdigit() or ch == "+")
    if len(digits.lstrip("+")) < 8:
        raise ValueError("customer_phone must contain at least 8 digits")
    return digits


# --- Inbound use-case payloads -------------------------------------------------


class CreateTripPayment(BaseModel):
    """Supplied by the reservation flow."""

    reservation_id: str = Field(min_length=1)
    payer_id: str = Field(min_length=1)
    payee_id: str = Field(min_length=1)
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    method: PaymentMethod
    customer_phone: Optional[str] = None

    @field_validator("customer_phone")
    @classmethod
    def _phone(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_phone(v)


class CreateRecharge(BaseModel):
    """Supplied by the account flow: the user tops up their own account."""

    user_id: str = Field(min_length=1)
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    method: PaymentMethod
    customer_phone: Optional[str] = None

    @field_validator("customer_phone")
    @classmethod
    def _phone(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_phone(v)


class InitiateMobilePayment(BaseModel):
    customer_phone: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    description: Optional[str] = None
    operator: Optional[MobileOperator] = None

    @field_validator("customer_phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        return _normalize_phone(v)  # type: ignore[return-value]


class RefundCause(str, Enum):
    CANCELLATION = "cancellation"
    ADMIN_OVERRIDE = "admin_override"


class RefundPayment(BaseModel):
    cause: RefundCause = RefundCause.CANCELLATION
    note: Optional[str] = None


# --- Gateway port DTOs ---------------------------------------------------------


class NormalizedStatus(str, Enum):
    ACCEPTED = "accepted"
    REFUSED = "refused"
    PENDING = "pending"
    UNKNOWN = "unknown"


class InitiationRequest(BaseModel):
    transaction_reference: str
    amount: Decimal
    currency: str
    description: str
    customer_phone: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    operator: Optional[MobileOperator] = None


class InitiationResult(BaseModel):
    accepted: bool
    provider: str
    provider_code: Optional[str] = None
    message: Optional[str] = None
    payment_url: Optional[str] = None
    payment_token: Optional[str] = None


class StatusCheck(BaseModel):
    transaction_reference: str
    status: NormalizedStatus
    provider: str
    provider_result: Optional[str] = None
    provider_payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    operator: Optional[MobileOperator] = None
    customer_phone: Optional[str] = None
    occurred_at: Optional[datetime] = None


class GatewayEvent(StatusCheck):
    """Authenticated, normalized webhook notification."""

    # raw fields for traceability (optional)
    raw: Optional[dict[str, Any]] = None


# --- Outbound views ------------------------------------------------------------


class GatewayInitiation(BaseModel):
    transaction_reference: str
    payment_url: Optional[str] = None
    payment_token: Optional[str] = None
    reused: bool = False


class CommissionView(BaseModel):
    rate: Decimal
    amount: Decimal
    collection_mode: str
    collection_status: str
    attempts: int
    manual_review: bool
    next_attempt_at: Optional[datetime] = None


class PaymentSummary(BaseModel):
    id: int
    reference: str
    kind: str
    reservation_id: Optional[str] = None
    payer_id: str
    payee_id: str
    currency: str
    total_amount: Decimal
    driver_amount: Decimal
    platform_commission: Decimal
    transaction_fee: Decimal
    method: str
    status: str
    commission: CommissionView
    initiated_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    receipt_number: Optional[str] = None
    receipt_url: Optional[str] = None
    refunded_amount: Optional[Decimal] = None
    refund_fee: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    AMOUNT_MISMATCH = "amount_mismatch"


class WebhookResult(BaseModel):
    transaction_reference: str
    outcome: WebhookOutcome
    status: str


class CommissionOutcome(str, Enum):
    COLLECTED = "collected"
    ALREADY_COLLECTED = "already_collected"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"
    SKIPPED = "skipped"


class ReconciliationReport(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    polled: int = 0
    transitioned: int = 0
    commissions_collected: int = 0
    commissions_failed: int = 0
    manual_review: int = 0
    errors: int = 0
    interrupted: bool = False
    failed_references: list[str] = Field(default_factory=list)


class MethodEligibility(BaseModel):
    """Payment methods a trip may use given the driver's prepaid balance."""

    payee_id: str
    methods: list[str]
    cash_allowed: bool
    commission: Decimal
    minimum_balance: Decimal
    # None when no wallet service is configured
    balance: Optional[Decimal] = None


class IntegrityView(BaseModel):
    payment_id: int
    reference: str
    intact: bool
    issues: list[str] = Field(default_factory=list)
    expected_commission: Decimal
    breakdown_delta: Decimal


class CommissionStatsLine(BaseModel):
    method: str
    collection_status: str
    count: int
    total_amount: Decimal
    commission_amount: Decimal


class CommissionStats(BaseModel):
    start: datetime
    end: datetime
    transaction_count: int = 0
    total_processed: Decimal = Decimal("0")
    total_commissions: Decimal = Decimal("0")
    average_amount: Decimal = Decimal("0")
    by_status: dict[str, Decimal] = Field(default_factory=dict)
    by_method: dict[str, Decimal] = Field(default_factory=dict)
    lines: list[CommissionStatsLine] = Field(default_factory=list)


class PaymentPage(BaseModel):
    items: list[PaymentSummary]
    total: int
    page: int
    limit: int
    pages: int

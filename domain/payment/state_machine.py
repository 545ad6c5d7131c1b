"""
Payment status transition validator.

The single authority on which status changes are legal. The caller passes the
status it read while holding the record lock, so the decision never depends on
a second read of the store.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .entity import Payment, PaymentStatus, utc_now
from .exceptions import ConcurrentUpdateError, InvalidTransitionError


ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.FAILED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETE, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETE: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.REFUNDED: frozenset(),
}


class TransitionCause(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"
    RECONCILIATION = "reconciliation"
    INITIATION = "initiation"
    CASH_CONFIRMATION = "cash-confirmation"
    ADMIN_OVERRIDE = "admin-override"
    REFUND_REQUEST = "refund-request"
    RETRY = "retry"


def is_allowed(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


@dataclass(frozen=True)
class TransitionResult:
    from_status: PaymentStatus
    to_status: PaymentStatus
    applied: bool
    receipt_issued: bool = False


ReceiptIssuer = Callable[..., bool]


class TransitionValidator:
    def __init__(self, receipt_issuer: ReceiptIssuer) -> None:
        self._issue_receipt = receipt_issuer

    def request_transition(
        self,
        payment: Payment,
        target: PaymentStatus,
        cause: TransitionCause,
        *,
        previous_status: PaymentStatus,
        now: Optional[datetime] = None,
        details: Optional[dict] = None,
    ) -> TransitionResult:
        """
        Apply `previous_status -> target` to the payment.

        A self-transition is a benign repeat and changes nothing. A transition outside
        the table appends an error entry and raises InvalidTransitionError without
        touching status, timestamps or receipt.
        """
        if payment.status is not previous_status:
            raise ConcurrentUpdateError(
                payment.transaction_reference,
                reason=f"expected {previous_status.value}, found {payment.status.value}",
            )

        if target is previous_status:
            return TransitionResult(from_status=previous_status, to_status=target, applied=False)

        moment = now or utc_now()
        if not is_allowed(previous_status, target):
            payment.add_error(
                "INVALID_TRANSITION",
                f"{previous_status.value} -> {target.value} rejected",
                {"from": previous_status.value, "to": target.value, "cause": cause.value},
                now=moment,
            )
            raise InvalidTransitionError(
                previous_status.value,
                target.value,
                reference=payment.transaction_reference,
            )

        # Timestamps never move backwards relative to the ones already recorded
        floor = max(t for t in (payment.initiated_at, payment.processed_at, payment.completed_at) if t)
        stamp = max(moment, floor)

        payment.status = target
        if target is PaymentStatus.PROCESSING and payment.processed_at is None:
            payment.processed_at = stamp

        receipt_issued = False
        if target is PaymentStatus.COMPLETE:
            if payment.processed_at is None:
                payment.processed_at = stamp
            if payment.completed_at is None:
                payment.completed_at = stamp
            receipt_issued = self._issue_receipt(payment, now=stamp)

        entry = {"from": previous_status.value, "to": target.value, "cause": cause.value}
        if details:
            entry.update(details)
        payment.add_log("STATUS_CHANGED", entry, now=stamp)
        payment.updated_at = stamp
        return TransitionResult(
            from_status=previous_status,
            to_status=target,
            applied=True,
            receipt_issued=receipt_issued,
        )

import re
from datetime import datetime, timedelta, timezone

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.commission import CommissionEngine
from domain.payment.entity import PaymentMethod, PaymentStatus
from domain.payment.exceptions import ConcurrentUpdateError, InvalidTransitionError
from domain.payment.service import PaymentRecordManager
from domain.payment.state_machine import ALLOWED_TRANSITIONS, TransitionCause, is_allowed
from tests.fakes import InMemoryPaymentRepository


NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def manager():
    return PaymentRecordManager(InMemoryPaymentRepository(), CommissionEngine())


def _payment(manager, status=PaymentStatus.PENDING):
    payment = manager.build("p1", "d1", "10000", PaymentMethod.ORANGE_MONEY, "res-1", now=NOW)
    payment.transaction_reference = "PAY_1_ABCDEF01"
    payment.status = status
    return payment


def test_transition_table():
    assert ALLOWED_TRANSITIONS[PaymentStatus.REFUNDED] == frozenset()
    assert is_allowed(PaymentStatus.FAILED, PaymentStatus.PENDING)
    assert not is_allowed(PaymentStatus.COMPLETE, PaymentStatus.PENDING)
    assert not is_allowed(PaymentStatus.PENDING, PaymentStatus.COMPLETE)


def test_accepted_transitions_stamp_timestamps_and_issue_receipt_once(manager):
    payment = _payment(manager)
    later = NOW + timedelta(minutes=3)

    manager.transition(payment, PaymentStatus.PROCESSING, TransitionCause.WEBHOOK,
                       previous_status=PaymentStatus.PENDING, now=NOW + timedelta(minutes=1))
    result = manager.transition(payment, PaymentStatus.COMPLETE, TransitionCause.WEBHOOK,
                                previous_status=PaymentStatus.PROCESSING, now=later)

    assert result.applied and result.receipt_issued
    assert payment.processed_at == NOW + timedelta(minutes=1)
    assert payment.completed_at == later
    assert re.fullmatch(r"REC_\d+_[0-9A-F]{6}", payment.receipt_number)
    assert payment.receipt_url.endswith(payment.receipt_number)
    changes = [e for e in payment.logs if e.action == "STATUS_CHANGED"]
    assert [(e.details["from"], e.details["to"]) for e in changes] == [
        ("pending", "processing"),
        ("processing", "complete"),
    ]
    assert len(manager.get_domain_events()) == 1


def test_self_transition_is_a_no_op(manager):
    payment = _payment(manager, PaymentStatus.COMPLETE)
    logs = list(payment.logs)
    result = manager.transition(payment, PaymentStatus.COMPLETE, TransitionCause.WEBHOOK,
                                previous_status=PaymentStatus.COMPLETE, now=NOW)
    assert not result.applied
    assert payment.logs == logs
    assert manager.get_domain_events() == []


def test_rejected_transition_records_error_and_leaves_state(manager):
    payment = _payment(manager, PaymentStatus.COMPLETE)
    payment.completed_at = NOW

    with pytest.raises(InvalidTransitionError) as exc:
        manager.transition(payment, PaymentStatus.PENDING, TransitionCause.WEBHOOK,
                           previous_status=PaymentStatus.COMPLETE, now=NOW)

    assert exc.value.from_status == "complete"
    assert exc.value.to_status == "pending"
    assert payment.status is PaymentStatus.COMPLETE
    assert payment.completed_at == NOW
    assert payment.errors[-1].code == "INVALID_TRANSITION"


def test_refunded_is_terminal(manager):
    payment = _payment(manager, PaymentStatus.REFUNDED)
    for target in (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETE, PaymentStatus.FAILED):
        with pytest.raises(InvalidTransitionError):
            manager.transition(payment, target, TransitionCause.ADMIN_OVERRIDE,
                               previous_status=PaymentStatus.REFUNDED, now=NOW)
    assert payment.status is PaymentStatus.REFUNDED


def test_stale_previous_status_is_rejected(manager):
    payment = _payment(manager, PaymentStatus.PROCESSING)
    with pytest.raises(ConcurrentUpdateError):
        manager.transition(payment, PaymentStatus.COMPLETE, TransitionCause.POLL,
                           previous_status=PaymentStatus.PENDING, now=NOW)


def test_timestamps_never_move_backwards(manager):
    payment = _payment(manager)
    earlier = NOW - timedelta(hours=1)
    manager.transition(payment, PaymentStatus.PROCESSING, TransitionCause.POLL,
                       previous_status=PaymentStatus.PENDING, now=earlier)
    assert payment.processed_at == NOW
    assert payment.initiated_at <= payment.processed_at


def test_receipt_only_for_complete_payments(manager):
    payment = _payment(manager)
    with pytest.raises(DomainValidationException):
        manager.issue_receipt(payment, now=NOW)

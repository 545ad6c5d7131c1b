from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.commission import CollectionRetryPolicy, CommissionEngine, CommissionRules
from domain.payment.entity import CollectionMode, CollectionStatus, PaymentMethod
from domain.payment.service import PaymentRecordManager
from tests.fakes import InMemoryPaymentRepository


NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _build(engine=None, amount="10000", method=PaymentMethod.WAVE, reservation_id="res-1"):
    manager = PaymentRecordManager(InMemoryPaymentRepository(), engine or CommissionEngine())
    payer, payee = ("p1", "d1") if reservation_id else ("u1", "u1")
    return manager.build(payer, payee, amount, method, reservation_id, now=NOW)


def test_compute_rate_applies_each_rule():
    engine = CommissionEngine()
    quote = engine.compute_rate(distance_km=5, driver_rating=4.9, trips_this_month=60)
    # 0.10 + 0.02 (short) - 0.02 (top rating) - 0.01 (volume)
    assert quote.rate == Decimal("0.09")
    assert set(quote.adjustments) == {"short_distance", "driver_rating", "volume"}
    assert not quote.clamped


def test_compute_rate_uses_first_matching_rating_tier():
    engine = CommissionEngine()
    assert engine.compute_rate(driver_rating=4.6).rate == Decimal("0.09")
    assert engine.compute_rate(driver_rating=4.8).rate == Decimal("0.08")
    assert engine.compute_rate(driver_rating=4.0).rate == Decimal("0.10")


def test_compute_rate_is_clamped_into_bounds():
    engine = CommissionEngine()
    quote = engine.compute_rate(
        base_rate=Decimal("0.02"), distance_km=80, driver_rating=4.9, trips_this_month=60
    )
    assert quote.rate == Decimal("0")
    assert quote.clamped

    high = engine.compute_rate(base_rate=Decimal("0.49"), distance_km=2)
    assert high.rate == Decimal("0.5")
    assert high.clamped


def test_mobile_money_split_adds_up():
    payment = _build()
    assert payment.transaction_fee == Decimal("250")
    assert payment.platform_commission == Decimal("1000")
    assert payment.driver_amount == Decimal("8750")
    assert payment.breakdown_delta() == 0
    assert payment.commission.collection_mode is CollectionMode.MOBILE_PAYMENT
    assert payment.commission.collection_status is CollectionStatus.PENDING


def test_cash_trip_collects_from_driver_account():
    payment = _build(method=PaymentMethod.CASH)
    assert payment.transaction_fee == Decimal("0")
    assert payment.platform_commission == Decimal("1000")
    assert payment.driver_amount == Decimal("9000")
    assert payment.mobile_money is None
    assert payment.commission.collection_mode is CollectionMode.RECHARGE_ACCOUNT


def test_commission_is_rounded_half_up_to_the_currency_unit():
    engine = CommissionEngine()
    payment = _build(engine, amount="1005", method=PaymentMethod.CASH)
    # 1005 * 0.10 = 100.5 -> 101
    assert payment.platform_commission == Decimal("101")
    assert payment.driver_amount == Decimal("904")


def test_apply_rejects_negative_driver_share_and_leaves_payment_unchanged():
    engine = CommissionEngine(CommissionRules(max_rate=Decimal("1")))
    payment = _build(engine)
    before = (payment.commission.rate, payment.platform_commission, payment.driver_amount)

    with pytest.raises(DomainValidationException) as exc:
        engine.apply(payment, Decimal("0.99"))
    assert exc.value.field == "driver_amount"
    assert (payment.commission.rate, payment.platform_commission, payment.driver_amount) == before


def test_apply_rejects_rate_outside_bounds():
    engine = CommissionEngine()
    payment = _build(engine)
    with pytest.raises(DomainValidationException):
        engine.apply(payment, Decimal("0.6"))


def test_mark_collected_is_idempotent():
    engine = CommissionEngine()
    payment = _build(engine)
    assert engine.mark_collected(payment, now=NOW) is True
    logs = len(payment.logs)
    assert engine.mark_collected(payment, now=NOW) is False
    assert len(payment.logs) == logs
    assert payment.commission.collected_at == NOW


def test_mark_failed_backs_off_then_requires_review():
    engine = CommissionEngine(
        retry_policy=CollectionRetryPolicy(max_attempts=3, backoff_base_seconds=60, backoff_max_seconds=100)
    )
    payment = _build(engine)

    assert engine.mark_failed(payment, "wallet down", now=NOW) is False
    assert payment.commission.next_attempt_at == NOW + timedelta(seconds=60)
    assert engine.mark_failed(payment, "wallet down", now=NOW) is False
    # 120 s capped at 100 s
    assert payment.commission.next_attempt_at == NOW + timedelta(seconds=100)
    assert engine.mark_failed(payment, "wallet down", now=NOW) is True

    record = payment.commission
    assert record.manual_review
    assert record.next_attempt_at is None
    assert record.attempts == 3
    assert [e.code for e in payment.errors] == ["COMMISSION_COLLECTION_FAILED"] * 3


def test_mark_failed_after_collection_is_rejected():
    engine = CommissionEngine()
    payment = _build(engine)
    engine.mark_collected(payment, now=NOW)
    with pytest.raises(DomainValidationException):
        engine.mark_failed(payment, "late failure", now=NOW)

from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.eligibility import RechargeLimits, allowed_methods, validate_operator_phone
from domain.payment.entity import MobileOperator, PaymentMethod


@pytest.mark.parametrize(
    "phone, operator",
    [
        ("+2250700000000", MobileOperator.ORANGE),
        ("0712345678", MobileOperator.ORANGE),
        ("+2250512345678", MobileOperator.MTN),
        ("0112345678", MobileOperator.MOOV),
        ("+2250512345678", MobileOperator.WAVE),
        ("12345678", MobileOperator.WAVE),
    ],
)
def test_phone_matches_operator(phone, operator):
    assert validate_operator_phone(phone, operator) == phone


@pytest.mark.parametrize(
    "phone, operator",
    [
        ("+2250500000000", MobileOperator.ORANGE),
        ("+2250700000000", MobileOperator.MTN),
        ("+2250700000000", MobileOperator.MOOV),
        ("07000000", MobileOperator.ORANGE),
        ("1234567", MobileOperator.WAVE),
        ("+33612345678", MobileOperator.WAVE),
    ],
)
def test_phone_of_another_network_is_rejected(phone, operator):
    with pytest.raises(DomainValidationException) as exc:
        validate_operator_phone(phone, operator)
    assert exc.value.field == "customer_phone"


def test_missing_phone_is_rejected():
    with pytest.raises(DomainValidationException):
        validate_operator_phone(None, MobileOperator.WAVE)


def test_cash_needs_minimum_balance_and_commission():
    mobile = [PaymentMethod.WAVE, PaymentMethod.ORANGE_MONEY, PaymentMethod.MTN_MONEY, PaymentMethod.MOOV_MONEY]

    assert allowed_methods(Decimal("5000"), Decimal("1000"), Decimal("1000")) == [PaymentMethod.CASH, *mobile]
    assert allowed_methods(Decimal("1000"), Decimal("1000"), Decimal("1000"))[0] is PaymentMethod.CASH
    # above the minimum, below the commission
    assert allowed_methods(Decimal("1500"), Decimal("2000"), Decimal("1000")) == mobile
    # covers the commission, below the minimum
    assert allowed_methods(Decimal("800"), Decimal("500"), Decimal("1000")) == mobile


def test_recharge_limits():
    limits = RechargeLimits()

    limits.check(Decimal("0"), 0, Decimal("500000"))
    limits.check(Decimal("400000"), 4, Decimal("100000"))

    with pytest.raises(DomainValidationException) as exc:
        limits.check(Decimal("450000"), 1, Decimal("50001"))
    assert exc.value.details["remaining"] == "50000"

    with pytest.raises(DomainValidationException) as exc:
        limits.check(Decimal("1000"), 5, Decimal("100"))
    assert exc.value.details["daily_count_limit"] == 5

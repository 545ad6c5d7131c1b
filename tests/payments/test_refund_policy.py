from decimal import Decimal

import pytest

from domain.payment.refund_policy import RefundPolicy


@pytest.mark.parametrize(
    "hours, refunded, fee",
    [
        (48, Decimal("10000"), Decimal("0")),
        (24.5, Decimal("10000"), Decimal("0")),
        (24, Decimal("9000"), Decimal("1000")),
        (12, Decimal("9000"), Decimal("1000")),
        (2, Decimal("5000"), Decimal("5000")),
        (0.5, Decimal("5000"), Decimal("5000")),
        (-1, Decimal("5000"), Decimal("5000")),
    ],
)
def test_refund_tiers(hours, refunded, fee):
    split = RefundPolicy().split(Decimal("10000"), hours)
    assert split.refunded_amount == refunded
    assert split.fee == fee
    assert split.refunded_amount + split.fee == Decimal("10000")


def test_unknown_departure_refunds_in_full():
    split = RefundPolicy().split(Decimal("7500"), None)
    assert split.refunded_amount == Decimal("7500")
    assert split.fee == Decimal("0")


def test_fee_is_rounded_and_split_still_conserves_amount():
    split = RefundPolicy().split(Decimal("1005"), 10)
    # 10% of 1005 = 100.5 -> 101
    assert split.fee == Decimal("101")
    assert split.refunded_amount == Decimal("904")


def test_tiers_must_be_ordered():
    with pytest.raises(ValueError):
        RefundPolicy(full_refund_hours=1, late_cancellation_hours=2)

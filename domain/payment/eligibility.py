"""
Eligibility rules checked before a payment is created or initiated:
operator phone formats, cash eligibility against the driver balance and
the daily recharge limits.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from domain.common.exceptions import DomainValidationException

from .entity import MobileOperator, PaymentMethod, to_decimal


# Ivorian numbering plan: the two digits after the country code identify the network
OPERATOR_PHONE_PATTERNS = {
    MobileOperator.ORANGE: re.compile(r"^(\+225)?07[0-9]{8}$"),
    MobileOperator.MTN: re.compile(r"^(\+225)?05[0-9]{8}$"),
    MobileOperator.MOOV: re.compile(r"^(\+225)?01[0-9]{8}$"),
    MobileOperator.WAVE: re.compile(r"^(\+225)?[0-9]{8,10}$"),
}


def validate_operator_phone(phone: Optional[str], operator: MobileOperator) -> str:
    """Return the phone unchanged, or raise DomainValidationException when the operator cannot serve it."""
    if not phone:
        raise DomainValidationException("Phone number is required", field="customer_phone")
    pattern = OPERATOR_PHONE_PATTERNS[MobileOperator(operator)]
    if not pattern.match(phone):
        raise DomainValidationException(
            f"Invalid phone number format for {operator.value}",
            field="customer_phone",
            details={"operator": operator.value},
        )
    return phone


def allowed_methods(
    balance: Decimal | str | int,
    commission: Decimal | str | int,
    minimum_balance: Decimal | str | int,
) -> List[PaymentMethod]:
    """
    Methods a trip may be paid with, given the driver's prepaid balance.

    Mobile money is always accepted. Cash is offered first, but only when the
    balance covers both the minimum balance and the commission to debit.
    """
    methods = [m for m in PaymentMethod if m.is_mobile_money]
    value = to_decimal(balance)
    if value >= to_decimal(minimum_balance) and value >= to_decimal(commission):
        methods.insert(0, PaymentMethod.CASH)
    return methods


@dataclass(frozen=True)
class RechargeLimits:
    """Per-payer daily caps on mobile-money recharges."""

    daily_amount: Decimal = Decimal("500000")
    daily_count: int = 5

    def check(self, used_amount: Decimal, used_count: int, amount: Decimal) -> None:
        if used_amount + amount > self.daily_amount:
            raise DomainValidationException(
                "Daily recharge amount limit exceeded",
                field="amount",
                details={
                    "daily_limit": str(self.daily_amount),
                    "used_today": str(used_amount),
                    "remaining": str(max(self.daily_amount - used_amount, Decimal("0"))),
                },
            )
        if used_count >= self.daily_count:
            raise DomainValidationException(
                "Daily recharge count limit reached",
                field="amount",
                details={"daily_count_limit": self.daily_count, "used_today": used_count},
            )

"""
Cancellation refund policy: the fee withheld depends on how long before
departure the trip was cancelled.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from domain.common.exceptions import DomainValidationException

from .entity import quantize_money, to_decimal


@dataclass(frozen=True)
class RefundSplit:
    refunded_amount: Decimal
    fee: Decimal
    fee_rate: Decimal


class RefundPolicy:
    """
    Refund tiers

    - more than `full_refund_hours` before departure: full refund, no fee
    - more than `late_cancellation_hours`: `standard_fee_rate` withheld
    - otherwise: `late_fee_rate` withheld
    """

    def __init__(
        self,
        *,
        full_refund_hours: float = 24,
        late_cancellation_hours: float = 2,
        standard_fee_rate: Decimal = Decimal("0.10"),
        late_fee_rate: Decimal = Decimal("0.50"),
        money_quantum: Decimal = Decimal("1"),
    ) -> None:
        if late_cancellation_hours > full_refund_hours:
            raise ValueError("late_cancellation_hours must not exceed full_refund_hours")
        self.full_refund_hours = full_refund_hours
        self.late_cancellation_hours = late_cancellation_hours
        self.standard_fee_rate = to_decimal(standard_fee_rate)
        self.late_fee_rate = to_decimal(late_fee_rate)
        self.money_quantum = money_quantum

    def fee_rate_for(self, hours_before_departure: float) -> Decimal:
        if hours_before_departure > self.full_refund_hours:
            return Decimal("0")
        if hours_before_departure > self.late_cancellation_hours:
            return self.standard_fee_rate
        return self.late_fee_rate

    def split(self, amount: Decimal, hours_before_departure: Optional[float]) -> RefundSplit:
        """refunded_amount + fee always equals amount."""
        total = to_decimal(amount)
        if total < 0:
            raise DomainValidationException("Refund base amount must not be negative", field="amount")
        if hours_before_departure is None:
            return RefundSplit(refunded_amount=total, fee=Decimal("0"), fee_rate=Decimal("0"))
        rate = self.fee_rate_for(hours_before_departure)
        fee = quantize_money(total * rate, self.money_quantum)
        return RefundSplit(refunded_amount=total - fee, fee=fee, fee_rate=rate)

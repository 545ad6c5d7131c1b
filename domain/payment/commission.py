"""
Commission engine - rate calculation and commission sub-record bookkeeping.

Pure calculation over the payment aggregate; persistence belongs to the
record manager.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from domain.common.exceptions import DomainValidationException

from .entity import (
    CollectionStatus,
    Payment,
    quantize_money,
    to_decimal,
    utc_now,
)


@dataclass(frozen=True)
class RatingTier:
    min_rating: Decimal
    discount: Decimal


@dataclass(frozen=True)
class CommissionRules:
    """Explicit rate adjustments. Values come from configuration."""

    base_rate: Decimal = Decimal("0.10")
    min_rate: Decimal = Decimal("0")
    max_rate: Decimal = Decimal("0.5")
    short_distance_km: Decimal = Decimal("10")
    short_distance_surcharge: Decimal = Decimal("0.02")
    long_distance_km: Decimal = Decimal("50")
    long_distance_discount: Decimal = Decimal("0.02")
    # Highest threshold first; the first matching tier applies
    rating_tiers: tuple[RatingTier, ...] = (
        RatingTier(Decimal("4.8"), Decimal("0.02")),
        RatingTier(Decimal("4.5"), Decimal("0.01")),
    )
    volume_min_trips: int = 50
    volume_discount: Decimal = Decimal("0.01")
    money_quantum: Decimal = Decimal("1")
    tolerance: Decimal = Decimal("0.01")


@dataclass(frozen=True)
class CollectionRetryPolicy:
    max_attempts: int = 5
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 3600.0

    def delay_for(self, attempt: int) -> timedelta:
        seconds = self.backoff_base_seconds * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.backoff_max_seconds))


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    base_rate: Decimal
    adjustments: dict[str, Decimal] = field(default_factory=dict)
    clamped: bool = False

    @property
    def reduction(self) -> Decimal:
        return self.base_rate - self.rate


class CommissionEngine:
    """
    Commission engine

    Responsibilities:
    1. derive a rate in [min_rate, max_rate] from trip distance, driver rating and volume
    2. apply a rate to a payment and keep the monetary breakdown consistent
    3. track collection of the commission independently of the payment status
    """

    def __init__(
        self,
        rules: Optional[CommissionRules] = None,
        retry_policy: Optional[CollectionRetryPolicy] = None,
    ) -> None:
        self.rules = rules or CommissionRules()
        self.retry_policy = retry_policy or CollectionRetryPolicy()

    def compute_rate(
        self,
        base_rate: Optional[Decimal] = None,
        distance_km: Optional[float | Decimal] = None,
        driver_rating: Optional[float | Decimal] = None,
        trips_this_month: Optional[int] = None,
    ) -> RateQuote:
        rules = self.rules
        base = to_decimal(base_rate) if base_rate is not None else rules.base_rate
        adjustments: dict[str, Decimal] = {}

        if distance_km is not None:
            distance = to_decimal(distance_km)
            if distance < rules.short_distance_km:
                adjustments["short_distance"] = rules.short_distance_surcharge
            elif distance > rules.long_distance_km:
                adjustments["long_distance"] = -rules.long_distance_discount

        if driver_rating is not None:
            rating = to_decimal(driver_rating)
            for tier in rules.rating_tiers:
                if rating >= tier.min_rating:
                    adjustments["driver_rating"] = -tier.discount
                    break

        if trips_this_month is not None and trips_this_month >= rules.volume_min_trips:
            adjustments["volume"] = -rules.volume_discount

        raw = base + sum(adjustments.values(), Decimal("0"))
        rate = min(max(raw, rules.min_rate), rules.max_rate)
        return RateQuote(rate=rate, base_rate=base, adjustments=adjustments, clamped=rate != raw)

    def apply(self, payment: Payment, rate: Decimal | RateQuote, *, now: Optional[datetime] = None) -> Payment:
        """
        Set the commission rate and recompute the split.

        The payment is left untouched when the resulting driver share would be negative.
        """
        quote = rate if isinstance(rate, RateQuote) else None
        value = quote.rate if quote else to_decimal(rate)
        if value < self.rules.min_rate or value > self.rules.max_rate:
            raise DomainValidationException(
                f"Commission rate {value} outside [{self.rules.min_rate}, {self.rules.max_rate}]",
                field="commission.rate",
            )

        commission = quantize_money(payment.total_amount * value, self.rules.money_quantum)
        driver_amount = payment.total_amount - commission - payment.transaction_fee
        if driver_amount < 0:
            raise DomainValidationException(
                "Commission and fees exceed the payment amount",
                field="driver_amount",
                details={
                    "total_amount": str(payment.total_amount),
                    "commission": str(commission),
                    "transaction_fee": str(payment.transaction_fee),
                },
            )

        payment.commission.rate = value
        payment.commission.amount = commission
        if quote is not None:
            payment.commission.base_rate = quote.base_rate
            payment.commission.adjustments = {k: str(v) for k, v in quote.adjustments.items()}
        payment.platform_commission = commission
        payment.driver_amount = driver_amount
        self.validate_breakdown(payment)
        payment.add_log(
            "COMMISSION_APPLIED",
            {"rate": str(value), "commission": str(commission), "driver_amount": str(driver_amount)},
            now=now,
        )
        return payment

    def validate_breakdown(self, payment: Payment) -> None:
        for name in ("total_amount", "driver_amount", "platform_commission", "transaction_fee"):
            if getattr(payment, name) < 0:
                raise DomainValidationException(f"{name} must not be negative", field=name)
        delta = payment.breakdown_delta()
        if abs(delta) > self.rules.tolerance:
            raise DomainValidationException(
                "Amount breakdown does not add up to the total",
                field="total_amount",
                details={
                    "total_amount": str(payment.total_amount),
                    "driver_amount": str(payment.driver_amount),
                    "platform_commission": str(payment.platform_commission),
                    "transaction_fee": str(payment.transaction_fee),
                    "delta": str(delta),
                },
            )

    def mark_collected(self, payment: Payment, *, now: Optional[datetime] = None) -> bool:
        """Returns False when the commission was already collected."""
        record = payment.commission
        if record.collection_status is CollectionStatus.COLLECTED:
            return False
        moment = now or utc_now()
        record.collection_status = CollectionStatus.COLLECTED
        record.collected_at = moment
        record.next_attempt_at = None
        record.last_error = None
        payment.add_log(
            "COMMISSION_COLLECTED",
            {"amount": str(record.amount), "mode": record.collection_mode.value, "attempts": record.attempts},
            now=moment,
        )
        return True

    def mark_failed(self, payment: Payment, reason: str, *, now: Optional[datetime] = None) -> bool:
        """
        Record a failed collection attempt and schedule the next one.

        Returns True once the attempts are exhausted and the payment needs manual review.
        """
        record = payment.commission
        if record.collection_status is CollectionStatus.COLLECTED:
            raise DomainValidationException(
                "Commission already collected", field="commission.collection_status"
            )
        moment = now or utc_now()
        record.collection_status = CollectionStatus.FAILED
        record.attempts += 1
        record.last_error = reason
        payment.add_error(
            "COMMISSION_COLLECTION_FAILED",
            reason,
            {"attempt": record.attempts},
            now=moment,
        )
        if record.attempts >= self.retry_policy.max_attempts:
            record.manual_review = True
            record.next_attempt_at = None
            return True
        record.next_attempt_at = moment + self.retry_policy.delay_for(record.attempts)
        return False

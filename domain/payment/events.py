"""
Payment domain events.

Dataclass events record important payment lifecycle facts for downstream handling
(settlement scheduling, notifications). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    transaction_reference: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PaymentCompleted(PaymentEvent):
    receipt_number: Optional[str] = None
    payee_id: Optional[str] = None


@dataclass
class PaymentFailed(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class PaymentRefunded(PaymentEvent):
    refunded_amount: str = ""
    fee: str = ""


@dataclass
class CommissionCollected(PaymentEvent):
    amount: str = ""


@dataclass
class CommissionReviewRequired(PaymentEvent):
    attempts: int = 0
    reason: Optional[str] = None

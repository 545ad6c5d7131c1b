"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings; every key is read from `PAYMENT__<GROUP>__<KEY>`,
e.g. `PAYMENT__GATEWAY__API_KEY` or `PAYMENT__COMMISSION__BASE_RATE`.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseModel):
    """CinetPay credentials and endpoints. Read-only once loaded."""

    model_config = ConfigDict(frozen=True)

    provider: str = "cinetpay"
    api_key: Optional[str] = None
    merchant_id: Optional[str] = None
    secret_key: Optional[str] = None
    base_url: str = "https://api-checkout.cinetpay.com/v2"
    currency: str = "XOF"
    channels: str = "ALL"
    lang: str = "fr"
    notify_url: Optional[str] = None
    return_url: Optional[str] = None


class PaymentTimeouts(BaseModel):
    connect: float = 5.0
    read: float = 30.0
    write: float = 10.0
    total: float = 30.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    require_signature: bool = True
    # IPs or CIDR ranges allowed to post notifications; empty allows all
    ip_allowlist: list[str] = Field(default_factory=list)


class CommissionSettings(BaseModel):
    base_rate: Decimal = Decimal("0.10")
    min_rate: Decimal = Decimal("0")
    max_rate: Decimal = Decimal("0.5")
    short_distance_km: Decimal = Decimal("10")
    short_distance_surcharge: Decimal = Decimal("0.02")
    long_distance_km: Decimal = Decimal("50")
    long_distance_discount: Decimal = Decimal("0.02")
    top_rating: Decimal = Decimal("4.8")
    top_rating_discount: Decimal = Decimal("0.02")
    good_rating: Decimal = Decimal("4.5")
    good_rating_discount: Decimal = Decimal("0.01")
    volume_min_trips: int = 50
    volume_discount: Decimal = Decimal("0.01")
    tolerance: Decimal = Decimal("0.01")
    money_quantum: Decimal = Decimal("1")


class FeeSettings(BaseModel):
    transaction_fee_rate: Decimal = Decimal("0.025")


class LimitSettings(BaseModel):
    min_amount: Decimal = Decimal("100")
    max_amount: Decimal = Decimal("500000")
    daily_recharge_amount: Decimal = Decimal("500000")
    daily_recharge_count: int = 5
    # cash trips need the driver to hold at least this much (and the commission)
    cash_minimum_balance: Decimal = Decimal("1000")


class RefundSettings(BaseModel):
    full_refund_hours: float = 24
    late_cancellation_hours: float = 2
    standard_fee_rate: Decimal = Decimal("0.10")
    late_fee_rate: Decimal = Decimal("0.50")


class ReconciliationSettings(BaseModel):
    pending_threshold_minutes: int = 30
    commission_threshold_minutes: int = 10
    max_attempts: int = 5
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3600
    batch_size: int = 100
    interval_seconds: int = 300


class ReceiptSettings(BaseModel):
    base_url: str = "http://localhost:8000/receipts"


class CollaboratorSettings(BaseModel):
    reservation_service_url: Optional[str] = None
    wallet_service_url: Optional[str] = None
    timeout: float = 10.0


class LockingSettings(BaseModel):
    backend: str = "local"  # local | redis
    timeout: int = 30
    blocking_timeout: int = 10


class PaymentSettings(BaseSettings):
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    commission: CommissionSettings = Field(default_factory=CommissionSettings)
    fees: FeeSettings = Field(default_factory=FeeSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    refund: RefundSettings = Field(default_factory=RefundSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    receipts: ReceiptSettings = Field(default_factory=ReceiptSettings)
    collaborators: CollaboratorSettings = Field(default_factory=CollaboratorSettings)
    locking: LockingSettings = Field(default_factory=LockingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()

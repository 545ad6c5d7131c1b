"""
Composition root: wires settings, adapters and the payment use-cases.

The API (per process) and the Celery tasks (per run) both build their services
here so the two entry points share one configuration path.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional

from application.ports.collaborators import (
    DriverWallet,
    Notifier,
    ReservationLookup,
    SettlementScheduler,
)
from application.ports.locking import RecordLocker
from application.ports.payment_gateway import MobileMoneyGateway
from application.services.payment_events import PaymentEventDispatcher
from application.services.payment_service import PaymentApplicationService
from application.services.settlement_service import SettlementService
from core.settings import PaymentSettings, payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.commission import (
    CollectionRetryPolicy,
    CommissionEngine,
    CommissionRules,
    RatingTier,
)
from domain.payment.eligibility import RechargeLimits
from domain.payment.refund_policy import RefundPolicy
from domain.payment.service import RecordPolicy
from infrastructure.external.cache.redis_client import RedisClient
from infrastructure.external.collaborators import (
    LoggingNotifier,
    build_driver_wallet,
    build_reservation_lookup,
)
from infrastructure.external.payments import get_payment_gateway
from infrastructure.locks import LocalRecordLocker, RedisRecordLocker
from infrastructure.unit_of_work import sqlalchemy_uow_factory


def build_commission_engine(config: PaymentSettings) -> CommissionEngine:
    c = config.commission
    rules = CommissionRules(
        base_rate=c.base_rate,
        min_rate=c.min_rate,
        max_rate=c.max_rate,
        short_distance_km=c.short_distance_km,
        short_distance_surcharge=c.short_distance_surcharge,
        long_distance_km=c.long_distance_km,
        long_distance_discount=c.long_distance_discount,
        rating_tiers=(
            RatingTier(c.top_rating, c.top_rating_discount),
            RatingTier(c.good_rating, c.good_rating_discount),
        ),
        volume_min_trips=c.volume_min_trips,
        volume_discount=c.volume_discount,
        money_quantum=c.money_quantum,
        tolerance=c.tolerance,
    )
    r = config.reconciliation
    retry_policy = CollectionRetryPolicy(
        max_attempts=r.max_attempts,
        backoff_base_seconds=r.backoff_base_seconds,
        backoff_max_seconds=r.backoff_max_seconds,
    )
    return CommissionEngine(rules, retry_policy)


def build_refund_policy(config: PaymentSettings) -> RefundPolicy:
    r = config.refund
    return RefundPolicy(
        full_refund_hours=r.full_refund_hours,
        late_cancellation_hours=r.late_cancellation_hours,
        standard_fee_rate=r.standard_fee_rate,
        late_fee_rate=r.late_fee_rate,
        money_quantum=config.commission.money_quantum,
    )


def build_record_policy(config: PaymentSettings) -> RecordPolicy:
    return RecordPolicy(
        min_amount=config.limits.min_amount,
        max_amount=config.limits.max_amount,
        mobile_money_fee_rate=config.fees.transaction_fee_rate,
        currency=config.gateway.currency,
        receipt_base_url=config.receipts.base_url,
    )


def build_recharge_limits(config: PaymentSettings) -> RechargeLimits:
    return RechargeLimits(
        daily_amount=config.limits.daily_recharge_amount,
        daily_count=config.limits.daily_recharge_count,
    )


def build_locker(config: PaymentSettings, redis: Optional[RedisClient] = None) -> RecordLocker:
    backend = config.locking.backend.lower()
    if backend == "redis":
        if redis is None:
            raise RuntimeError("PAYMENT__LOCKING__BACKEND=redis requires an initialized Redis client")
        return RedisRecordLocker(
            redis,
            timeout=config.locking.timeout,
            blocking_timeout=config.locking.blocking_timeout,
        )
    if backend == "local":
        return LocalRecordLocker()
    raise ValueError(f"Unsupported lock backend: {backend}")


def _configured_wallet(config: PaymentSettings) -> Optional[DriverWallet]:
    """Without a wallet service, cash eligibility is not checked at creation."""
    if not config.collaborators.wallet_service_url:
        return None
    return build_driver_wallet(config.collaborators)


def build_payment_service(
    *,
    scheduler: SettlementScheduler,
    config: Optional[PaymentSettings] = None,
    uow_factory: Optional[Callable[..., AbstractUnitOfWork]] = None,
    gateway: Optional[MobileMoneyGateway] = None,
    locker: Optional[RecordLocker] = None,
    redis: Optional[RedisClient] = None,
    reservations: Optional[ReservationLookup] = None,
    notifier: Optional[Notifier] = None,
    wallet: Optional[DriverWallet] = None,
) -> PaymentApplicationService:
    cfg = config or payment_settings
    return PaymentApplicationService(
        uow_factory or sqlalchemy_uow_factory(),
        gateway or get_payment_gateway(cfg),
        locker or build_locker(cfg, redis),
        reservations=reservations or build_reservation_lookup(cfg.collaborators),
        dispatcher=PaymentEventDispatcher(notifier or LoggingNotifier(), scheduler),
        commission_engine=build_commission_engine(cfg),
        refund_policy=build_refund_policy(cfg),
        record_policy=build_record_policy(cfg),
        wallet=wallet or _configured_wallet(cfg),
        recharge_limits=build_recharge_limits(cfg),
        cash_minimum_balance=cfg.limits.cash_minimum_balance,
    )


def build_settlement_service(
    payments: PaymentApplicationService,
    *,
    config: Optional[PaymentSettings] = None,
    wallet: Optional[DriverWallet] = None,
) -> SettlementService:
    cfg = config or payment_settings
    r = cfg.reconciliation
    return SettlementService(
        payments,
        wallet or build_driver_wallet(cfg.collaborators),
        pending_threshold=timedelta(minutes=r.pending_threshold_minutes),
        commission_threshold=timedelta(minutes=r.commission_threshold_minutes),
        batch_size=r.batch_size,
    )

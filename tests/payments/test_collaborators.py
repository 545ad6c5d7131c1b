from decimal import Decimal

import httpx
import pytest

from core.settings import CollaboratorSettings, LockingSettings, PaymentSettings
from domain.payment.exceptions import DomainValidationException, SettlementError
from infrastructure.composition import _configured_wallet, build_locker, build_recharge_limits
from infrastructure.external.collaborators import build_driver_wallet, build_reservation_lookup
from infrastructure.locks import LocalRecordLocker


CONFIG = CollaboratorSettings(
    reservation_service_url="https://reservations.test/api",
    wallet_service_url="https://wallets.test/api",
    timeout=2.0,
)


@pytest.mark.asyncio
async def test_trip_context_is_read_from_the_reservation_service():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/reservations/res-1/trip-context"
        return httpx.Response(
            200,
            json={"departure_at": "2026-03-03T10:00:00+00:00", "distance_km": 12.5, "driver_rating": 4.7},
        )

    lookup = build_reservation_lookup(CONFIG, transport=httpx.MockTransport(handler))
    context = await lookup.get_trip_context("res-1")

    assert context.reservation_id == "res-1"
    assert context.distance_km == 12.5
    assert context.departure_at.hour == 10
    assert context.trips_this_month is None


@pytest.mark.asyncio
async def test_unknown_reservation_is_a_validation_error():
    lookup = build_reservation_lookup(CONFIG, transport=httpx.MockTransport(lambda r: httpx.Response(404)))
    with pytest.raises(DomainValidationException):
        await lookup.get_trip_context("res-404")


@pytest.mark.asyncio
async def test_unavailable_reservation_service_yields_an_empty_context():
    lookup = build_reservation_lookup(CONFIG, transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    context = await lookup.get_trip_context("res-1")
    assert context.distance_km is None

    unconfigured = build_reservation_lookup(CollaboratorSettings())
    assert (await unconfigured.get_trip_context("res-1")).driver_rating is None


@pytest.mark.asyncio
async def test_wallet_calls_carry_the_reference_as_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers["Idempotency-Key"], request.content))
        return httpx.Response(201, json={})

    wallet = build_driver_wallet(CONFIG, transport=httpx.MockTransport(handler))
    await wallet.debit_commission("drv-1", Decimal("1000"), "PAY_1_AAAA0001")
    await wallet.credit_earnings("drv-1", Decimal("8750"), "PAY_1_AAAA0002")

    assert seen[0][0] == "/api/wallets/drv-1/debits"
    assert seen[0][1] == "PAY_1_AAAA0001"
    assert b'"amount":"1000"' in seen[0][2].replace(b" ", b"")
    assert seen[1][0] == "/api/wallets/drv-1/credits"


@pytest.mark.asyncio
async def test_wallet_conflict_means_already_applied():
    wallet = build_driver_wallet(CONFIG, transport=httpx.MockTransport(lambda r: httpx.Response(409)))
    await wallet.debit_commission("drv-1", Decimal("1000"), "PAY_1_AAAA0001")


@pytest.mark.asyncio
async def test_wallet_failures_raise_settlement_error():
    wallet = build_driver_wallet(CONFIG, transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(SettlementError):
        await wallet.credit_earnings("drv-1", Decimal("10"), "PAY_1_AAAA0001")

    with pytest.raises(SettlementError):
        await build_driver_wallet(CollaboratorSettings()).credit_earnings("drv-1", Decimal("10"), "PAY_1_AAAA0001")


@pytest.mark.asyncio
async def test_wallet_balance_is_read_from_the_wallet_service():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/wallets/drv-1/balance"
        return httpx.Response(200, json={"balance": "12500.50"})

    wallet = build_driver_wallet(CONFIG, transport=httpx.MockTransport(handler))
    assert await wallet.get_balance("drv-1") == Decimal("12500.50")

    broken = build_driver_wallet(CONFIG, transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
    with pytest.raises(SettlementError):
        await broken.get_balance("drv-1")
    with pytest.raises(SettlementError):
        await build_driver_wallet(CollaboratorSettings()).get_balance("drv-1")


def test_payment_service_checks_balances_only_with_a_wallet_service():
    with_wallet = PaymentSettings(collaborators=CONFIG)
    without = PaymentSettings(collaborators=CollaboratorSettings())

    assert _configured_wallet(with_wallet) is not None
    assert _configured_wallet(without) is None
    limits = build_recharge_limits(with_wallet)
    assert limits.daily_amount == Decimal("500000")
    assert limits.daily_count == 5



def test_build_locker_backends():
    assert isinstance(build_locker(PaymentSettings(locking=LockingSettings(backend="local"))), LocalRecordLocker)
    with pytest.raises(RuntimeError):
        build_locker(PaymentSettings(locking=LockingSettings(backend="redis")))
    with pytest.raises(ValueError):
        build_locker(PaymentSettings(locking=LockingSettings(backend="zookeeper")))

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from api.dependencies import get_payment_service
from api.routes.payments import _ip_allowed
from application.dtos.payments import CreateTripPayment
from core.settings import payment_settings
from domain.payment.entity import PaymentMethod
from domain.payment.exceptions import ConcurrentUpdateError
from main import app
from shared.codes.payment_codes import PaymentCode
from tests.fakes import (
    FakeClock,
    FakeLookup,
    InMemoryPaymentRepository,
    RecordingNotifier,
    RecordingScheduler,
    StubGateway,
    build_service,
)


WEBHOOK = "/api/v1/payments/webhooks/cinetpay"


@pytest.fixture
def api():
    repository = InMemoryPaymentRepository()
    service = build_service(
        repository,
        gateway=StubGateway(),
        lookup=FakeLookup(),
        notifier=RecordingNotifier(),
        scheduler=RecordingScheduler(),
        clock=FakeClock(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)),
    )
    app.dependency_overrides[get_payment_service] = lambda: service
    client = TestClient(app)
    yield client, service, repository
    app.dependency_overrides.clear()


def _create(service, method=PaymentMethod.WAVE):
    summary = asyncio.run(
        service.create_trip_payment(
            CreateTripPayment(
                reservation_id="res-1",
                payer_id="rider-1",
                payee_id="drv-1",
                amount=Decimal("10000"),
                method=method,
            )
        )
    )
    return summary.reference


def _post(client, reference, *, signature="valid", status="accepted"):
    body = json.dumps({"transaction_id": reference, "status": status, "amount": "10000"})
    return client.post(
        WEBHOOK,
        content=body,
        headers={"Content-Type": "application/json", "X-Signature": signature},
    )


def test_accepted_notification_is_acknowledged(api):
    client, service, repository = api
    reference = _create(service)

    resp = _post(client, reference)

    assert resp.status_code == 200
    payload = resp.json()
    assert payload["code"] == 0
    assert payload["data"] == {"transaction_reference": reference, "outcome": "applied", "status": "complete"}
    assert resp.headers["X-Request-ID"]
    assert repository.rows[reference].receipt_number


def test_duplicate_notification_is_acknowledged(api):
    client, service, _ = api
    reference = _create(service)
    _post(client, reference)

    resp = _post(client, reference)

    assert resp.status_code == 200
    assert resp.json()["data"]["outcome"] == "duplicate"


def test_unknown_reference_is_acknowledged_and_ignored(api):
    client, _, _ = api

    resp = _post(client, "PAY_0_DEADBEEF")

    assert resp.status_code == 200
    assert resp.json()["code"] == 0
    assert resp.json()["data"] == {"outcome": "ignored"}


def test_forged_notification_is_unauthorized(api):
    client, service, repository = api
    reference = _create(service)

    resp = _post(client, reference, signature="forged")

    assert resp.status_code == 401
    assert resp.json()["code"] == PaymentCode.SIGNATURE_ERROR
    assert resp.json()["error"]["type"] == "PaymentSignatureError"
    assert repository.rows[reference].status.value == "pending"


def test_lock_timeout_asks_the_provider_to_retry(api, monkeypatch):
    client, service, repository = api
    reference = _create(service)

    async def locked(ref):
        raise ConcurrentUpdateError(ref, reason="record lock not acquired")

    monkeypatch.setattr(repository, "get_by_reference_for_update", locked)
    resp = _post(client, reference)

    assert resp.status_code == 409
    assert resp.json()["code"] == PaymentCode.CONCURRENT_UPDATE
    assert repository.rows[reference].status.value == "pending"

    monkeypatch.undo()
    assert _post(client, reference).json()["data"]["outcome"] == "applied"


def test_database_error_asks_the_provider_to_retry(api, monkeypatch):
    client, service, repository = api
    reference = _create(service)

    async def broken(ref):
        raise OperationalError("SELECT", {}, Exception("connection lost"))

    monkeypatch.setattr(repository, "get_by_reference_for_update", broken)
    resp = _post(client, reference)

    assert resp.status_code == 503
    assert repository.rows[reference].status.value == "pending"


def test_source_outside_allowlist_is_ignored(api, monkeypatch):
    client, service, repository = api
    reference = _create(service)
    monkeypatch.setattr(payment_settings.webhook, "ip_allowlist", ["196.1.100.0/24"])

    resp = _post(client, reference)

    assert resp.status_code == 200
    assert resp.json()["data"] == {"outcome": "ignored"}
    assert repository.rows[reference].status.value == "pending"


@pytest.mark.parametrize(
    "remote_ip, allowlist, expected",
    [
        ("10.0.0.5", [], True),
        ("10.0.0.5", ["10.0.0.0/8"], True),
        ("10.0.0.5", ["10.0.0.5"], True),
        ("192.168.1.1", ["10.0.0.0/8", "172.16.0.1"], False),
        (None, ["10.0.0.0/8"], False),
        ("testclient", ["10.0.0.0/8"], False),
        ("10.0.0.5", ["not-an-ip", "10.0.0.5"], True),
    ],
)
def test_ip_allowlist(remote_ip, allowlist, expected):
    assert _ip_allowed(remote_ip, allowlist) is expected


def test_create_and_fetch_trip_payment(api):
    client, _, _ = api

    created = client.post(
        "/api/v1/payments/trips",
        json={
            "reservation_id": "res-9",
            "payer_id": "rider-1",
            "payee_id": "drv-1",
            "amount": "10000",
            "method": "cash",
        },
    )

    assert created.status_code == 200
    data = created.json()["data"]
    assert data["status"] == "pending"
    assert data["commission"]["collection_mode"] == "recharge_account"

    fetched = client.get(f"/api/v1/payments/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["data"]["reference"] == data["reference"]


def test_cash_confirmation_route(api):
    client, service, _ = api
    reference = _create(service, method=PaymentMethod.CASH)

    resp = client.post(f"/api/v1/payments/{reference}/cash-confirmation")

    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "complete"


def test_invalid_payload_is_a_validation_error(api):
    client, _, _ = api

    resp = client.post("/api/v1/payments/trips", json={"reservation_id": "res-9", "amount": "-5"})

    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "ValidationError"


def test_missing_payment_is_not_found(api):
    client, _, _ = api

    resp = client.get("/api/v1/payments/999")

    assert resp.status_code == 404
    assert resp.json()["code"] == PaymentCode.PAYMENT_NOT_FOUND

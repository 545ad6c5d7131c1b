"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT__GATEWAY__API_KEY", "test-api-key")
os.environ.setdefault("PAYMENT__GATEWAY__MERCHANT_ID", "445566")
os.environ.setdefault("PAYMENT__GATEWAY__SECRET_KEY", "test-secret")
os.environ.setdefault("PAYMENT__LOCKING__BACKEND", "local")

from datetime import datetime, timezone

import pytest

from tests.fakes import (
    FakeClock,
    FakeLookup,
    FakeWallet,
    InMemoryPaymentRepository,
    RecordingNotifier,
    RecordingScheduler,
    StubGateway,
    build_service,
)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository():
    return InMemoryPaymentRepository()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def lookup():
    return FakeLookup()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def service(repository, gateway, lookup, notifier, scheduler, clock, wallet):
    return build_service(
        repository,
        gateway=gateway,
        lookup=lookup,
        notifier=notifier,
        scheduler=scheduler,
        clock=clock,
        wallet=wallet,
    )

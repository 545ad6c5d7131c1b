import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.dtos.payments import CreateTripPayment, InitiateMobilePayment, WebhookOutcome
from application.services.payment_events import PaymentEventDispatcher
from application.services.payment_service import PaymentApplicationService
from domain.payment.commission import CommissionEngine
from domain.payment.entity import CollectionStatus, PaymentMethod, PaymentStatus
from domain.payment.exceptions import ConcurrentUpdateError, PaymentReferenceConflict
from domain.payment.service import PaymentRecordManager
from infrastructure.database import build_engine, create_tables
from infrastructure.locks import LocalRecordLocker
from infrastructure.unit_of_work import sqlalchemy_uow_factory
from tests.fakes import FakeClock, FakeLookup, RecordingNotifier, RecordingScheduler, StubGateway


NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def uow_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/payments.db")
    await create_tables(bind=engine)
    yield sqlalchemy_uow_factory(async_sessionmaker(bind=engine, expire_on_commit=False))
    await engine.dispose()


async def _create(uow_factory, *, reservation_id="res-1", method=PaymentMethod.WAVE, now=NOW, reference=None):
    async with uow_factory() as uow:
        kwargs = {"reference_factory": lambda _now: reference} if reference else {}
        records = PaymentRecordManager(uow.payment_repository, CommissionEngine(), **kwargs)
        return await records.create("rider-1", "drv-1", "10000", method, reservation_id, now=now)


@pytest.mark.asyncio
async def test_create_and_read_back(uow_factory):
    created = await _create(uow_factory)

    async with uow_factory(readonly=True) as uow:
        by_id = await uow.payment_repository.get_by_id(created.id)
        by_ref = await uow.payment_repository.get_by_reference(created.transaction_reference)
        exists = await uow.payment_repository.exists_by_reference(created.transaction_reference)

    assert exists
    assert by_id == by_ref
    assert by_id.status is PaymentStatus.PENDING
    assert by_id.total_amount == Decimal("10000")
    assert by_id.platform_commission == Decimal("1000")
    assert by_id.transaction_fee == Decimal("250")
    assert by_id.initiated_at == NOW
    assert by_id.mobile_money.operator.value == "wave"
    assert [entry.action for entry in by_id.logs] == ["COMMISSION_APPLIED", "PAYMENT_CREATED"]
    assert by_id.version == 0


@pytest.mark.asyncio
async def test_duplicate_reference_is_a_conflict(uow_factory):
    first = await _create(uow_factory)
    async with uow_factory() as uow:
        records = PaymentRecordManager(uow.payment_repository, CommissionEngine())
        clone = records.build("rider-2", "drv-2", "5000", PaymentMethod.CASH, "res-2", now=NOW)
        clone.transaction_reference = first.transaction_reference
        with pytest.raises(PaymentReferenceConflict):
            await uow.payment_repository.create(clone)


@pytest.mark.asyncio
async def test_taken_reference_is_not_reused_by_the_record_manager(uow_factory):
    await _create(uow_factory, reference="PAY_1_00000001")

    with pytest.raises(PaymentReferenceConflict):
        await _create(uow_factory, reservation_id="res-2", reference="PAY_1_00000001")


@pytest.mark.asyncio
async def test_stale_version_is_rejected(uow_factory):
    created = await _create(uow_factory)
    reference = created.transaction_reference

    async with uow_factory() as uow:
        fresh = await uow.payment_repository.get_by_reference_for_update(reference)
        fresh.add_log("NOTE", {"n": 1}, now=NOW)
        updated = await uow.payment_repository.update(fresh)
    assert updated.version == 1

    with pytest.raises(ConcurrentUpdateError):
        async with uow_factory() as uow:
            created.add_log("NOTE", {"n": 2}, now=NOW)
            await uow.payment_repository.update(created)

    async with uow_factory(readonly=True) as uow:
        stored = await uow.payment_repository.get_by_reference(reference)
    assert stored.version == 1
    assert stored.logs[-1].details == {"n": 1}


@pytest.mark.asyncio
async def test_active_payment_lookup_ignores_failed(uow_factory):
    created = await _create(uow_factory)
    async with uow_factory() as uow:
        payment = await uow.payment_repository.get_by_reference_for_update(created.transaction_reference)
        payment.status = PaymentStatus.FAILED
        await uow.payment_repository.update(payment)

    async with uow_factory(readonly=True) as uow:
        assert await uow.payment_repository.find_active_for_reservation("res-1") is None
    second = await _create(uow_factory)
    async with uow_factory(readonly=True) as uow:
        active = await uow.payment_repository.find_active_for_reservation("res-1")
    assert active.transaction_reference == second.transaction_reference


@pytest.mark.asyncio
async def test_stale_pending_listing(uow_factory):
    old = await _create(uow_factory, reservation_id="res-old")
    await _create(uow_factory, reservation_id="res-cash", method=PaymentMethod.CASH)
    await _create(uow_factory, reservation_id="res-new", now=NOW + timedelta(minutes=40))

    async with uow_factory(readonly=True) as uow:
        stale = await uow.payment_repository.list_stale_pending(NOW + timedelta(minutes=10))

    assert [p.transaction_reference for p in stale] == [old.transaction_reference]


@pytest.mark.asyncio
async def test_commission_candidates_listing(uow_factory):
    due_pending = await _create(uow_factory, reservation_id="res-a", method=PaymentMethod.CASH)
    retry_due = await _create(uow_factory, reservation_id="res-b", method=PaymentMethod.CASH)
    retry_later = await _create(uow_factory, reservation_id="res-c", method=PaymentMethod.CASH)
    review = await _create(uow_factory, reservation_id="res-d", method=PaymentMethod.CASH)
    await _create(uow_factory, reservation_id="res-e", method=PaymentMethod.CASH)

    async def complete(reference, mutate=None):
        async with uow_factory() as uow:
            payment = await uow.payment_repository.get_by_reference_for_update(reference)
            payment.status = PaymentStatus.COMPLETE
            payment.processed_at = payment.completed_at = NOW
            if mutate:
                mutate(payment.commission)
            await uow.payment_repository.update(payment)

    def failed_until(moment):
        def mutate(record):
            record.collection_status = CollectionStatus.FAILED
            record.attempts = 1
            record.next_attempt_at = moment
        return mutate

    def in_review(record):
        record.collection_status = CollectionStatus.FAILED
        record.manual_review = True

    await complete(due_pending.transaction_reference)
    await complete(retry_due.transaction_reference, failed_until(NOW + timedelta(minutes=5)))
    await complete(retry_later.transaction_reference, failed_until(NOW + timedelta(hours=2)))
    await complete(review.transaction_reference, in_review)

    async with uow_factory(readonly=True) as uow:
        candidates = await uow.payment_repository.list_commission_candidates(
            pending_before=NOW + timedelta(minutes=20),
            due_at=NOW + timedelta(minutes=30),
        )
        unsettled = await uow.payment_repository.list_unsettled()
        completed = await uow.payment_repository.list_by_status([PaymentStatus.COMPLETE])
        open_ones = await uow.payment_repository.list_by_status([PaymentStatus.PENDING, PaymentStatus.PROCESSING])

    assert {p.transaction_reference for p in candidates} == {
        due_pending.transaction_reference,
        retry_due.transaction_reference,
    }
    assert len(unsettled) == 5
    assert len(completed) == 4
    assert len(open_ones) == 1


@pytest.mark.asyncio
async def test_reporting_queries(uow_factory):
    wave = await _create(uow_factory, reservation_id="res-a")
    cash = await _create(uow_factory, reservation_id="res-b", method=PaymentMethod.CASH)
    later = await _create(uow_factory, reservation_id="res-c", now=NOW + timedelta(hours=1))
    async with uow_factory() as uow:
        records = PaymentRecordManager(uow.payment_repository, CommissionEngine())
        recharge = await records.create("drv-1", "drv-1", "3000", "mtn_money", now=NOW + timedelta(minutes=30))

    for created, status in ((wave, CollectionStatus.PENDING), (cash, CollectionStatus.COLLECTED)):
        async with uow_factory() as uow:
            payment = await uow.payment_repository.get_by_reference_for_update(created.transaction_reference)
            payment.status = PaymentStatus.COMPLETE
            payment.processed_at = payment.completed_at = NOW
            payment.commission.collection_status = status
            await uow.payment_repository.update(payment)

    async with uow_factory(readonly=True) as uow:
        repo = uow.payment_repository
        rider_today = await repo.daily_mobile_money_usage("rider-1", NOW - timedelta(hours=1))
        rider_late = await repo.daily_mobile_money_usage("rider-1", NOW + timedelta(minutes=30))
        driver_today = await repo.daily_mobile_money_usage("drv-1", NOW - timedelta(hours=1))
        totals = await repo.commission_totals(NOW - timedelta(hours=1), NOW + timedelta(hours=1))
        empty = await repo.commission_totals(NOW + timedelta(hours=2), NOW + timedelta(hours=3))
        first_page, total = await repo.list_for_party("drv-1", limit=2)
        second_page, _ = await repo.list_for_party("drv-1", limit=2, offset=2)
        _, rider_total = await repo.list_for_party("rider-1")

    # the cash trip does not count against the recharge limits
    assert rider_today == (Decimal("20000"), 2)
    assert rider_late == (Decimal("10000"), 1)
    assert driver_today == (Decimal("3000"), 1)

    assert [(t.method, t.collection_status, t.count) for t in totals] == [
        ("cash", "collected", 1),
        ("wave", "pending", 1),
    ]
    assert all(t.total_amount == Decimal("10000") and t.commission_amount == Decimal("1000") for t in totals)
    assert empty == []

    assert total == 4
    assert [p.transaction_reference for p in first_page] == [
        later.transaction_reference,
        recharge.transaction_reference,
    ]
    assert [p.transaction_reference for p in second_page] == [cash.transaction_reference, wave.transaction_reference]
    assert rider_total == 3


@pytest.mark.asyncio
async def test_webhook_flow_against_the_database(uow_factory):
    scheduler = RecordingScheduler()
    service = PaymentApplicationService(
        uow_factory,
        StubGateway(),
        LocalRecordLocker(),
        reservations=FakeLookup(),
        dispatcher=PaymentEventDispatcher(RecordingNotifier(), scheduler),
        clock=FakeClock(NOW),
    )
    summary = await service.create_trip_payment(
        CreateTripPayment(
            reservation_id="res-1",
            payer_id="rider-1",
            payee_id="drv-1",
            amount=Decimal("10000"),
            method=PaymentMethod.ORANGE_MONEY,
        )
    )
    await service.initiate(summary.reference, InitiateMobilePayment(customer_phone="+2250700000000"))
    body = json.dumps({"transaction_id": summary.reference, "status": "accepted", "amount": "10000"}).encode()
    headers = {"X-Signature": "valid"}

    first = await service.handle_webhook(headers, body)
    second = await service.handle_webhook(headers, body)

    assert first.outcome is WebhookOutcome.APPLIED
    assert second.outcome is WebhookOutcome.DUPLICATE
    stored = await service.get_payment_summary(summary.id)
    assert stored.status == "complete"
    assert stored.receipt_number is not None
    assert stored.completed_at == NOW
    assert scheduler.scheduled == [summary.reference]

"""Outbox dispatcher, idempotency store, points ledger and immutability guards."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from sitswap.core.idempotency import IdempotencyKeyStore, Reservation
from sitswap.core.immutability import ImmutabilityViolationError
from sitswap.core.permissions import service_context
from sitswap.models import Booking, OutboxEvent, PointsLedgerEntry, StripeWebhookEvent
from sitswap.services.outbox_service import OutboxDispatcher, enqueue
from sitswap.services.points_service import PointsReason, points_service

pytestmark = pytest.mark.anyio


# ==================== OUTBOX ====================


async def _outbox_rows(session_factory) -> list[OutboxEvent]:
    async with session_factory() as session:
        return list((await session.execute(select(OutboxEvent))).scalars().all())


async def test_outbox_runs_effect_and_marks_processed(session_factory, seed):
    delivered = []

    async def record(db, payload):
        delivered.append(payload)

    async with session_factory() as session:
        await enqueue(session, "test.record", {"user_id": seed["host_id"], "amount": Decimal("12.50")}, seed["listing_id"])
        await session.commit()

    dispatcher = OutboxDispatcher(handlers={"test.record": record})
    assert await dispatcher.drain(session_factory) == 1
    assert delivered == [{"user_id": str(seed["host_id"]), "amount": "12.50"}]

    [row] = await _outbox_rows(session_factory)
    assert row.status == "processed"
    assert row.attempts == 1
    assert row.processed_at is not None

    # Nothing left to do.
    assert await dispatcher.drain(session_factory) == 0


async def test_outbox_backs_off_then_parks_failed_effect(session_factory):
    async def broken(db, payload):
        raise RuntimeError("provider down")

    async with session_factory() as session:
        await enqueue(session, "test.broken", {"n": 1})
        await session.commit()

    dispatcher = OutboxDispatcher(handlers={"test.broken": broken}, max_attempts=2, retry_seconds=30)
    assert await dispatcher.drain(session_factory) == 0

    [row] = await _outbox_rows(session_factory)
    assert row.status == "pending"
    assert row.attempts == 1
    assert "provider down" in row.last_error

    # Not due yet.
    assert await dispatcher.drain(session_factory) == 0
    assert (await _outbox_rows(session_factory))[0].attempts == 1

    async with session_factory() as session:
        await session.execute(
            update(OutboxEvent).values(available_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        await session.commit()
    assert await dispatcher.drain(session_factory) == 0

    [row] = await _outbox_rows(session_factory)
    assert row.status == "failed"
    assert row.attempts == 2


async def test_outbox_unknown_effect_is_a_failure(session_factory):
    async with session_factory() as session:
        await enqueue(session, "test.unknown", {})
        await session.commit()

    dispatcher = OutboxDispatcher(handlers={}, max_attempts=1)
    assert await dispatcher.drain(session_factory) == 0
    [row] = await _outbox_rows(session_factory)
    assert row.status == "failed"
    assert "No outbox handler" in row.last_error


async def test_outbox_drain_filters_by_aggregate(session_factory, seed):
    seen = []

    async def record(db, payload):
        seen.append(payload["n"])

    async with session_factory() as session:
        await enqueue(session, "test.record", {"n": 1}, aggregate_id=seed["host_id"])
        await enqueue(session, "test.record", {"n": 2}, aggregate_id=seed["sitter_id"])
        await session.commit()

    dispatcher = OutboxDispatcher(handlers={"test.record": record})
    assert await dispatcher.drain(session_factory, aggregate_id=seed["sitter_id"]) == 1
    assert seen == [2]


# ==================== IDEMPOTENCY ====================


async def test_idempotency_store_reserve_and_release(db):
    store = IdempotencyKeyStore()
    assert await store.reserve(db, "evt_1", "payment_intent.succeeded", {"id": "evt_1"}) is Reservation.FRESH
    assert await store.reserve(db, "evt_1", "payment_intent.succeeded") is Reservation.DUPLICATE

    await store.release(db, "evt_1")
    assert await store.reserve(db, "evt_1", "payment_intent.succeeded") is Reservation.FRESH


async def test_idempotency_store_without_table(db, engine):
    async with engine.begin() as conn:
        await conn.run_sync(StripeWebhookEvent.__table__.drop)
    store = IdempotencyKeyStore()
    assert await store.reserve(db, "evt_1", "payment_intent.succeeded") is Reservation.UNRECORDED


# ==================== POINTS LEDGER ====================


async def test_ledger_entry_is_once_per_booking_and_reason(db, seed, make_booking):
    booking_id = await make_booking(status="completed", payment_status="paid")
    ctx = service_context("test", seed["host_id"])

    assert await points_service.award(db, ctx, seed["host_id"], booking_id, 4) is not None
    assert await points_service.award(db, ctx, seed["host_id"], booking_id, 4) is None
    await db.commit()
    assert await points_service.get_balance(db, seed["host_id"]) == 4

    await points_service.revoke(db, ctx, seed["host_id"], booking_id, 4)
    await db.commit()
    assert await points_service.get_balance(db, seed["host_id"]) == 0


async def test_balance_is_never_negative(db, seed):
    ctx = service_context("test")
    await points_service.append_entry(db, ctx, seed["sitter_id"], None, -7, PointsReason.SPEND)
    await db.commit()
    assert await points_service.get_balance(db, seed["sitter_id"]) == 0

    entries = await points_service.list_entries(db, seed["sitter_id"])
    assert [e.points_delta for e in entries] == [-7]


# ==================== IMMUTABILITY ====================


async def test_ledger_rows_cannot_be_edited(db, seed, grant_points):
    await grant_points(seed["sitter_id"], 3)
    entry = (await db.execute(select(PointsLedgerEntry))).scalar_one()
    entry.points_delta = 300
    with pytest.raises(ImmutabilityViolationError):
        await db.flush()
    await db.rollback()


async def test_fee_snapshot_cannot_be_rewritten(db, make_booking):
    booking_id = await make_booking(status="accepted")
    booking = await db.get(Booking, booking_id)
    booking.cleaning_fee = Decimal("999")
    with pytest.raises(ImmutabilityViolationError):
        await db.flush()
    await db.rollback()


async def test_bookings_cannot_be_deleted(db, make_booking):
    booking_id = await make_booking(status="declined")
    booking = await db.get(Booking, booking_id)
    await db.delete(booking)
    with pytest.raises(ImmutabilityViolationError):
        await db.flush()
    await db.rollback()


# ==================== HEALTH ====================


async def test_health_reports_outbox_backlog(async_client, session_factory):
    async with session_factory() as session:
        await enqueue(session, "test.unknown", {})
        await session.commit()
    await OutboxDispatcher(handlers={}, max_attempts=1).drain(session_factory)
    async with session_factory() as session:
        await enqueue(session, "test.later", {})
        await session.commit()

    resp = await async_client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["outbox"] == {"pending": 1, "failed": 1}

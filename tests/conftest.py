"""Shared test configuration and fixtures.

Key principles:
- Every test gets its own SQLite database file, created from the ORM metadata
  (the overlap guard is a trigger there instead of a gist exclusion).
- All HTTP calls go through the local ASGI app via httpx.ASGITransport.
- AnyIO is the single async runner (@pytest.mark.anyio).
"""

import hashlib
import hmac
import json
import os
import time
import uuid
from collections.abc import AsyncGenerator
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

# Must be set before sitswap.config builds its cached settings.
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("STRIPE_SECRET_KEY", "")
os.environ.setdefault("SENDGRID_API_KEY", "")

import httpx
import pytest
from httpx import ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sitswap.api.deps import get_stripe_gateway
from sitswap.core.security import create_access_token
from sitswap.database import Base, get_db
from sitswap.gateways.stripe_gateway import StripeGateway
from sitswap.main import app
from sitswap.models import AvailabilityRange, Booking, Listing, Notification, PointsLedgerEntry, Profile

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sitswap.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seed(session_factory) -> dict[str, Any]:
    """Host with one listing (free calendar) and two sitters."""
    host = Profile(id=uuid.uuid4(), full_name="Hannah Host", email="host@example.com")
    sitter = Profile(id=uuid.uuid4(), full_name="Sam Sitter", email="sitter@example.com")
    other_sitter = Profile(id=uuid.uuid4(), full_name="Olive Other", email="other@example.com")
    listing = Listing(id=uuid.uuid4(), user_id=host.id, title="Cottage with two cats")
    window_start = date.today()
    availability = AvailabilityRange(
        listing_id=listing.id,
        start_date=window_start,
        end_date=window_start + timedelta(days=120),
        is_booked=False,
    )
    async with session_factory() as session:
        session.add_all([host, sitter, other_sitter])
        await session.flush()
        session.add(listing)
        await session.flush()
        session.add(availability)
        await session.commit()
    return {
        "host_id": host.id,
        "sitter_id": sitter.id,
        "other_sitter_id": other_sitter.id,
        "listing_id": listing.id,
    }


@pytest.fixture
def make_booking(session_factory, seed):
    """Insert a booking row directly, with a fee snapshot at 50/night + 200 cleaning."""

    async def _make(
        status: str = "accepted",
        payment_status: str | None = "unpaid",
        start: date | None = None,
        nights: int = 4,
        points_applied: int = 0,
        points_awarded: int = 0,
        cleaning_fee: Decimal = Decimal("200"),
        stripe_payment_intent_id: str | None = None,
        sitter_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        start = start or date.today() + timedelta(days=10)
        per_night = Decimal("50")
        service_total = per_night * nights
        total = service_total + cleaning_fee
        booking = Booking(
            listing_id=seed["listing_id"],
            sitter_id=sitter_id or seed["sitter_id"],
            requested_by=sitter_id or seed["sitter_id"],
            start_date=start,
            end_date=start + timedelta(days=nights),
            status=status,
            payment_status=payment_status,
            service_fee_per_night=per_night,
            cleaning_fee=cleaning_fee,
            service_fee_total=service_total,
            total_fee=total,
            cash_due=max(total - points_applied * per_night, Decimal("0")),
            points_applied=points_applied,
            points_awarded=points_awarded,
            stripe_payment_intent_id=stripe_payment_intent_id,
        )
        async with session_factory() as session:
            session.add(booking)
            await session.commit()
        return booking.id

    return _make


@pytest.fixture
def grant_points(session_factory):
    async def _grant(user_id: uuid.UUID, points: int) -> None:
        async with session_factory() as session:
            session.add(PointsLedgerEntry(user_id=user_id, booking_id=None, points_delta=points, reason="award"))
            await session.commit()

    return _grant


@pytest.fixture
def fetch(session_factory):
    """Fresh reads for assertions."""

    class Fetch:
        async def booking(self, booking_id: uuid.UUID) -> Booking:
            async with session_factory() as session:
                return await session.get(Booking, booking_id)

        async def notifications(self, notification_type: str | None = None) -> list[Notification]:
            async with session_factory() as session:
                query = select(Notification)
                if notification_type:
                    query = query.where(Notification.type == notification_type)
                return list((await session.execute(query)).scalars().all())

        async def ledger(self, user_id: uuid.UUID) -> list[PointsLedgerEntry]:
            async with session_factory() as session:
                result = await session.execute(
                    select(PointsLedgerEntry).where(PointsLedgerEntry.user_id == user_id)
                )
                return list(result.scalars().all())

        async def availability(self) -> list[AvailabilityRange]:
            async with session_factory() as session:
                return list((await session.execute(select(AvailabilityRange))).scalars().all())

    return Fetch()


@pytest.fixture
def stripe_gateway() -> StripeGateway:
    return StripeGateway(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
async def async_client(session_factory, stripe_gateway) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    transport = ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def auth_headers(user_id: uuid.UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """``Stripe-Signature`` header value, computed the way Stripe signs events."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def signed_event(event: dict[str, Any]) -> tuple[str, dict[str, str]]:
    payload = json.dumps(event)
    return payload, {"Stripe-Signature": stripe_signature(payload), "Content-Type": "application/json"}

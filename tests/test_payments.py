"""Direct completion, checkout creation and the atomic payment step."""

from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.exc import DBAPIError

from sitswap.api.deps import get_stripe_gateway
from sitswap.config import settings
from sitswap.core.exceptions import PaymentError
from sitswap.domain.fees import calculate_booking_fees
from sitswap.gateways.base import GatewayType, PaymentGateway, PaymentResult
from sitswap.main import app
from sitswap.models import Booking
from sitswap.services.payment_service import (
    MANUAL_PAYMENTS_DISABLED,
    NOT_UPDATED,
    AtomicPaymentRequest,
    PaymentService,
    payment_service,
)
from sitswap.services.points_service import points_service
from tests.conftest import auth_headers

pytestmark = pytest.mark.anyio

PAYMENTS = "/api/v1/payments"


class FakeGateway(PaymentGateway):
    def __init__(self, configured: bool = True, succeed: bool = True):
        self.configured = configured
        self.succeed = succeed
        self.calls: list[dict] = []

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def create_checkout(self, amount, currency, description, metadata, idempotency_key=None):
        self.calls.append(
            {
                "amount": amount,
                "currency": currency,
                "description": description,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if not self.succeed:
            return PaymentResult(success=False, error_message="card network down")
        return PaymentResult(success=True, transaction_id="cs_test_123", client_secret="cs_test_123_secret")

    def verify_webhook(self, payload, signature):
        raise NotImplementedError


# ==================== DIRECT COMPLETION ====================


async def test_points_only_completion(async_client, seed, make_booking, grant_points, fetch):
    booking_id = await make_booking(status="accepted", nights=4, cleaning_fee=Decimal("0"))
    await grant_points(seed["sitter_id"], 6)

    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/complete",
        json={"requested_points": 10},
        headers=auth_headers(seed["sitter_id"]),
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["payment_status"] == "paid"
    assert body["already_paid"] is False
    assert body["points_applied"] == 4
    assert Decimal(str(body["cash_due"])) == Decimal("0")

    booking = await fetch.booking(booking_id)
    assert booking.payment_method == "points"
    assert booking.paid_at is not None

    ledger = await fetch.ledger(seed["sitter_id"])
    assert sorted(e.points_delta for e in ledger) == [-4, 6]
    paid = await fetch.notifications("booking_paid")
    assert sorted(str(n.user_id) for n in paid) == sorted([str(seed["host_id"]), str(seed["sitter_id"])])

    balance = await async_client.get("/api/v1/points/balance", headers=auth_headers(seed["sitter_id"]))
    assert balance.json()["balance"] == 2

    history = await async_client.get("/api/v1/points/ledger", headers=auth_headers(seed["sitter_id"]))
    assert history.status_code == 200
    assert sorted((e["reason"], e["points_delta"]) for e in history.json()) == [("award", 6), ("spend", -4)]


async def test_manual_completion_outside_production(async_client, seed, make_booking, fetch):
    booking_id = await make_booking(status="confirmed")
    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/complete",
        json={},
        headers=auth_headers(seed["sitter_id"]),
    )
    assert resp.status_code == 200, resp.text
    assert Decimal(str(resp.json()["cash_due"])) == Decimal("400")

    booking = await fetch.booking(booking_id)
    assert booking.payment_status == "paid"
    assert booking.payment_method == "manual"

    # Paying again reports the earlier payment and notifies nobody.
    again = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/complete",
        json={},
        headers=auth_headers(seed["sitter_id"]),
    )
    assert again.status_code == 200
    assert again.json()["already_paid"] is True
    assert len(await fetch.notifications("booking_paid")) == 2


async def test_completion_that_loses_to_concurrent_payment_reports_already_paid(
    async_client, seed, make_booking, session_factory, fetch, monkeypatch
):
    booking_id = await make_booking(status="confirmed")

    async def paid_elsewhere(self, db, request):
        async with session_factory() as other:
            await other.execute(
                update(Booking)
                .where(Booking.id == request.booking_id)
                .values(payment_status="paid", payment_method="stripe", paid_at=datetime.now(UTC))
            )
            await other.commit()
        return NOT_UPDATED

    monkeypatch.setattr(PaymentService, "apply_booking_payment", paid_elsewhere)
    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/complete",
        json={},
        headers=auth_headers(seed["sitter_id"]),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["already_paid"] is True
    assert resp.json()["payment_status"] == "paid"

    booking = await fetch.booking(booking_id)
    assert booking.payment_method == "stripe"
    assert await fetch.notifications("booking_paid") == []


async def test_only_sitter_can_complete(async_client, seed, make_booking):
    booking_id = await make_booking(status="accepted")
    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/complete", json={}, headers=auth_headers(seed["host_id"])
    )
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Only the sitter can complete payment"


async def test_pending_booking_is_not_payable(async_client, seed, make_booking):
    booking_id = await make_booking(status="pending")
    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/complete", json={}, headers=auth_headers(seed["sitter_id"])
    )
    assert resp.status_code == 422
    assert resp.json()["detail"] == "This sit isn't ready for payment yet"


async def test_production_refuses_manual_cash(db, seed, make_booking, fetch, monkeypatch):
    monkeypatch.setattr(settings, "environment", "production")
    booking_id = await make_booking(status="accepted")

    with pytest.raises(PaymentError) as exc_info:
        await payment_service.complete_booking_payment(db, booking_id, seed["sitter_id"], requested_points=0)
    assert exc_info.value.status_code == 402
    assert exc_info.value.detail == MANUAL_PAYMENTS_DISABLED
    assert (await fetch.booking(booking_id)).payment_status == "unpaid"


async def test_production_allows_points_only(db, seed, make_booking, grant_points, monkeypatch):
    monkeypatch.setattr(settings, "environment", "production")
    booking_id = await make_booking(status="accepted", nights=2, cleaning_fee=Decimal("0"))
    await grant_points(seed["sitter_id"], 2)

    booking, result = await payment_service.complete_booking_payment(
        db, booking_id, seed["sitter_id"], requested_points=2
    )
    assert result.updated is True
    assert booking.payment_status == "paid"
    assert booking.payment_method == "points"


# ==================== CHECKOUT ====================


async def test_checkout_for_cash_balance(async_client, seed, make_booking, grant_points):
    gateway = FakeGateway()
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    booking_id = await make_booking(status="accepted")
    await grant_points(seed["sitter_id"], 3)

    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/checkout",
        json={"requested_points": 3},
        headers=auth_headers(seed["sitter_id"]),
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["checkout_session_id"] == "cs_test_123"
    assert body["client_secret"] == "cs_test_123_secret"
    assert body["amount"] == 25000
    assert body["currency"] == "usd"
    assert body["points_to_apply"] == 3

    [call] = gateway.calls
    assert call["metadata"] == {
        "flow": "booking_fee_payment",
        "booking_id": str(booking_id),
        "sitter_id": str(seed["sitter_id"]),
        "requested_points": "3",
    }
    assert call["idempotency_key"] == f"booking:{booking_id}:fee-checkout:25000:points:3"


async def test_checkout_rejects_points_only_payment(async_client, seed, make_booking, grant_points):
    gateway = FakeGateway()
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    booking_id = await make_booking(status="accepted", nights=2, cleaning_fee=Decimal("0"))
    await grant_points(seed["sitter_id"], 5)

    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/checkout",
        json={"requested_points": 2},
        headers=auth_headers(seed["sitter_id"]),
    )
    assert resp.status_code == 422
    assert resp.json()["detail"] == (
        "No cash checkout is required for this sit. Use direct completion for points-only payment."
    )
    assert gateway.calls == []


async def test_checkout_requires_configured_processor(async_client, seed, make_booking):
    app.dependency_overrides[get_stripe_gateway] = lambda: FakeGateway(configured=False)
    booking_id = await make_booking(status="accepted")

    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/checkout", json={}, headers=auth_headers(seed["sitter_id"])
    )
    assert resp.status_code == 503
    assert resp.json()["detail"] == "Stripe payment is not configured."


async def test_checkout_processor_failure(async_client, seed, make_booking):
    app.dependency_overrides[get_stripe_gateway] = lambda: FakeGateway(succeed=False)
    booking_id = await make_booking(status="accepted")

    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/checkout", json={}, headers=auth_headers(seed["sitter_id"])
    )
    assert resp.status_code == 402
    assert resp.json()["detail"] == "Unable to start checkout right now. Please try again."


async def test_checkout_rejects_paid_booking(async_client, seed, make_booking):
    app.dependency_overrides[get_stripe_gateway] = lambda: FakeGateway()
    booking_id = await make_booking(status="accepted", payment_status="paid")

    resp = await async_client.post(
        f"{PAYMENTS}/bookings/{booking_id}/checkout", json={}, headers=auth_headers(seed["sitter_id"])
    )
    assert resp.status_code == 422
    assert resp.json()["detail"] == "This sit has already been paid"


# ==================== ATOMIC STEP ====================


def _request(booking_id, sitter_id, cash_paid=None, requested_points=0):
    start = date(2025, 6, 1)
    return AtomicPaymentRequest(
        booking_id=booking_id,
        sitter_id=sitter_id,
        requested_points=requested_points,
        fees=calculate_booking_fees(start, start + timedelta(days=4), Decimal("50"), Decimal("200")),
        paid_at=datetime.now(UTC),
        cash_paid=cash_paid,
    )


async def test_atomic_payment_rejects_underpayment(db, seed, make_booking, fetch):
    booking_id = await make_booking(status="accepted")
    result = await payment_service.apply_booking_payment(
        db, _request(booking_id, seed["sitter_id"], cash_paid=Decimal("399.99"))
    )
    await db.commit()
    assert result.succeeded is False
    assert (await fetch.booking(booking_id)).payment_status == "unpaid"


async def test_atomic_payment_requires_the_sitter(db, seed, make_booking):
    booking_id = await make_booking(status="accepted")
    result = await payment_service.apply_booking_payment(db, _request(booking_id, seed["other_sitter_id"]))
    await db.rollback()
    assert result.updated is False
    assert result.already_paid is False


async def test_atomic_payment_spends_points_once(db, seed, make_booking, grant_points):
    booking_id = await make_booking(status="accepted")
    await grant_points(seed["sitter_id"], 2)

    first = await payment_service.apply_booking_payment(
        db, _request(booking_id, seed["sitter_id"], cash_paid=Decimal("300"), requested_points=2)
    )
    await db.commit()
    assert first.updated is True
    assert first.points_applied == 2
    assert first.cash_due == Decimal("300")

    second = await payment_service.apply_booking_payment(
        db, _request(booking_id, seed["sitter_id"], cash_paid=Decimal("300"), requested_points=2)
    )
    await db.commit()
    assert second.updated is False
    assert second.already_paid is True
    assert await points_service.get_balance(db, seed["sitter_id"]) == 0


class _Orig(Exception):
    def __init__(self, sqlstate: str):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


class _Rows:
    def __init__(self, row):
        self._row = row

    def mappings(self):
        return self

    def first(self):
        return self._row


class FakePostgresSession:
    """Stands in for a PostgreSQL session calling pay_booking_with_points."""

    def __init__(self, expanded_sqlstate: str | None = None):
        self.expanded_sqlstate = expanded_sqlstate
        self.calls: list[dict] = []

    def get_bind(self):
        class _Dialect:
            name = "postgresql"

        class _Bind:
            dialect = _Dialect()

        return _Bind()

    @asynccontextmanager
    async def begin_nested(self):
        yield

    async def execute(self, statement, params):
        self.calls.append(params)
        if "cash_paid" in params and self.expanded_sqlstate:
            raise DBAPIError(str(statement), params, _Orig(self.expanded_sqlstate))
        return _Rows({"updated": True, "already_paid": False, "points_applied": 0, "cash_due": Decimal("400")})


async def test_function_falls_back_to_earlier_signature():
    session = FakePostgresSession(expanded_sqlstate="42883")
    result = await PaymentService().apply_booking_payment(
        session, _request(uuid4(), uuid4(), cash_paid=Decimal("400"))
    )
    assert result.updated is True
    assert ["cash_paid" in call for call in session.calls] == [True, False]


async def test_function_other_errors_propagate():
    session = FakePostgresSession(expanded_sqlstate="40001")
    with pytest.raises(DBAPIError):
        await PaymentService().apply_booking_payment(session, _request(uuid4(), uuid4(), cash_paid=Decimal("400")))
    assert len(session.calls) == 1


async def test_function_without_settlement_uses_earlier_signature():
    session = FakePostgresSession(expanded_sqlstate="42883")
    result = await PaymentService().apply_booking_payment(session, _request(uuid4(), uuid4()))
    assert result.cash_due == Decimal("400")
    assert ["cash_paid" in call for call in session.calls] == [False]

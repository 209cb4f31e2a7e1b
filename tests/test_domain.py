"""Pure rules: fees, the booking and payment state machines, Stripe event parsing."""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from sitswap.core.exceptions import AuthorizationError, InvalidBookingStatus, ValidationError
from sitswap.domain.booking_state import (
    BookingFacts,
    BookingStatus,
    Cancelled,
    Parties,
    TransitionEvent,
    parse_target,
    state_columns,
    state_from_columns,
    transition,
)
from sitswap.domain.fees import calculate_booking_fees, clamp_points, snapshot_backfill, to_cents
from sitswap.domain.payment_state import (
    PaymentStatus,
    parse_payment_status,
    patch_sources,
)
from sitswap.services.stripe_events import (
    extract_payment_details,
    is_payment_success,
    normalize_event,
    status_patch_for,
)

SITTER = uuid4()
HOST = uuid4()
END = date(2025, 6, 10)


def facts(insurance: bool = False, payment: PaymentStatus = PaymentStatus.UNPAID, requested_by=None) -> BookingFacts:
    return BookingFacts(
        parties=Parties(sitter_id=SITTER, host_id=HOST, requested_by=requested_by),
        insurance_selected=insurance,
        payment_status=payment,
        end_date=END,
    )


def event(target: BookingStatus, actor, today: date = date(2025, 6, 1), reason: str | None = None) -> TransitionEvent:
    return TransitionEvent(target=target, actor_id=actor, at=datetime.now(UTC), today=today, reason=reason)


# ==================== FEES ====================


def test_fees_for_a_four_night_stay():
    fees = calculate_booking_fees(date(2025, 5, 10), date(2025, 5, 14), Decimal("10"), Decimal("20"))
    assert fees.nights == 4
    assert fees.service_fee_total == Decimal("40")
    assert fees.total_fee == Decimal("60")
    assert fees.cash_due(0) == Decimal("60")
    assert fees.cash_due(4) == Decimal("20")


def test_fees_bill_at_least_one_night():
    fees = calculate_booking_fees(date(2025, 5, 10), date(2025, 5, 10), Decimal("50"), Decimal("200"))
    assert fees.nights == 1
    assert fees.total_fee == Decimal("250")


def test_cash_due_never_negative():
    fees = calculate_booking_fees(date(2025, 5, 10), date(2025, 5, 12), Decimal("50"), Decimal("0"))
    assert fees.cash_due(10) == Decimal("0")


@pytest.mark.parametrize(
    ("requested", "balance", "nights", "expected"),
    [
        (None, 10, 4, 0),
        (-3, 10, 4, 0),
        (3, 10, 4, 3),
        (9, 10, 4, 4),
        (9, 2, 4, 2),
        (5, -1, 4, 0),
    ],
)
def test_clamp_points(requested, balance, nights, expected):
    assert clamp_points(requested, balance, nights) == expected


def test_to_cents_rounds_half_up():
    assert to_cents(Decimal("400")) == 40000
    assert to_cents(Decimal("0.005")) == 1
    assert to_cents(Decimal("19.994")) == 1999


def test_snapshot_backfill_only_fills_gaps():
    fees = calculate_booking_fees(date(2025, 5, 10), date(2025, 5, 14), Decimal("50"), Decimal("200"))
    current = {
        "service_fee_per_night": Decimal("45"),
        "cleaning_fee": None,
        "service_fee_total": Decimal("180"),
        "total_fee": None,
        "cash_due": None,
    }
    assert snapshot_backfill(current, fees, Decimal("400")) == {
        "cleaning_fee": Decimal("200"),
        "total_fee": Decimal("400"),
        "cash_due": Decimal("400"),
    }


# ==================== BOOKING STATE ====================


def test_host_accepts_sitter_request():
    state = transition(state_from_columns("pending"), event(BookingStatus.ACCEPTED, HOST), facts())
    assert state.status is BookingStatus.ACCEPTED


def test_requester_cannot_respond():
    with pytest.raises(AuthorizationError):
        transition(state_from_columns("pending"), event(BookingStatus.DECLINED, SITTER), facts())


def test_host_request_is_answered_by_sitter():
    host_request = facts(requested_by=HOST)
    state = transition(state_from_columns("pending"), event(BookingStatus.ACCEPTED, SITTER), host_request)
    assert state.status is BookingStatus.ACCEPTED
    with pytest.raises(AuthorizationError):
        transition(state_from_columns("pending"), event(BookingStatus.ACCEPTED, HOST), host_request)


def test_insured_sitter_may_self_confirm():
    with pytest.raises(AuthorizationError):
        transition(state_from_columns("pending"), event(BookingStatus.CONFIRMED, SITTER), facts())
    state = transition(
        state_from_columns("pending"), event(BookingStatus.CONFIRMED, SITTER), facts(insurance=True)
    )
    assert state.status is BookingStatus.CONFIRMED


def test_same_status_is_a_no_op():
    current = state_from_columns("accepted")
    assert transition(current, event(BookingStatus.ACCEPTED, HOST), facts()) is current
    with pytest.raises(AuthorizationError):
        transition(current, event(BookingStatus.ACCEPTED, uuid4()), facts())


def test_terminal_states_are_final():
    for status in ("declined", "cancelled", "completed"):
        with pytest.raises(InvalidBookingStatus):
            transition(state_from_columns(status), event(BookingStatus.CONFIRMED, HOST), facts())


def test_outsider_is_rejected():
    with pytest.raises(AuthorizationError):
        transition(state_from_columns("accepted"), event(BookingStatus.CANCELLED, uuid4()), facts())


def test_pending_cannot_complete():
    with pytest.raises(InvalidBookingStatus, match="Only confirmed sits can be marked as completed"):
        transition(
            state_from_columns("pending"),
            event(BookingStatus.COMPLETED, HOST, today=END),
            facts(payment=PaymentStatus.PAID),
        )


def test_completion_needs_end_date_and_payment():
    confirmed = state_from_columns("confirmed")
    with pytest.raises(InvalidBookingStatus, match="until the end date"):
        transition(confirmed, event(BookingStatus.COMPLETED, HOST, today=date(2025, 6, 9)), facts(payment=PaymentStatus.PAID))
    with pytest.raises(InvalidBookingStatus, match="Payment is required"):
        transition(confirmed, event(BookingStatus.COMPLETED, HOST, today=END), facts())
    state = transition(confirmed, event(BookingStatus.COMPLETED, SITTER, today=END), facts(payment=PaymentStatus.PAID))
    assert state.status is BookingStatus.COMPLETED


def test_cancellation_carries_actor_and_reason():
    state = transition(
        state_from_columns("confirmed"),
        event(BookingStatus.CANCELLED, SITTER, reason="Change of plans"),
        facts(),
    )
    assert isinstance(state, Cancelled)
    assert state.by == SITTER
    columns = state_columns(state)
    assert columns["status"] == "cancelled"
    assert columns["cancelled_by"] == SITTER
    assert columns["cancellation_reason"] == "Change of plans"


def test_parse_target():
    assert parse_target("confirmed") is BookingStatus.CONFIRMED
    for value in ("pending", "archived", ""):
        with pytest.raises(ValidationError):
            parse_target(value)


# ==================== PAYMENT STATE ====================


def test_payment_status_only_moves_forward():
    assert parse_payment_status(None) is PaymentStatus.UNPAID
    assert parse_payment_status("refunded") is PaymentStatus.REFUNDED
    for target in PaymentStatus:
        assert PaymentStatus.REFUNDED not in patch_sources(target)
    assert PaymentStatus.PAID not in patch_sources(PaymentStatus.UNPAID)


def test_patch_sources():
    assert patch_sources(PaymentStatus.PAID) == {PaymentStatus.UNPAID}
    assert patch_sources(PaymentStatus.REFUNDED) == {PaymentStatus.PAID}
    assert patch_sources(PaymentStatus.UNPAID) == {PaymentStatus.UNPAID}


# ==================== STRIPE EVENTS ====================


def test_normalize_requires_id_and_type():
    with pytest.raises(ValueError):
        normalize_event({"type": "payment_intent.succeeded"})
    with pytest.raises(ValueError):
        normalize_event({"id": "evt_1"})


def test_payment_intent_details():
    booking_id = uuid4()
    parsed = normalize_event(
        {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": "pi_1",
                    "amount": 40000,
                    "amount_received": 39000,
                    "currency": "USD",
                    "metadata": {"flow": "booking_fee_payment", "booking_id": str(booking_id), "requested_points": "2"},
                }
            },
        }
    )
    details = extract_payment_details(parsed)
    assert details.booking_id == booking_id
    assert details.payment_intent_id == "pi_1"
    assert details.amount_cents == 39000
    assert details.currency == "usd"
    assert details.requested_points == 2
    assert details.is_booking_fee_flow
    assert is_payment_success(parsed)
    assert status_patch_for(parsed) is PaymentStatus.PAID


def test_charge_details_and_bad_metadata():
    parsed = normalize_event(
        {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_1",
                    "payment_intent": "pi_9",
                    "amount": 500,
                    "metadata": {"booking_id": "not-a-uuid", "requested_points": "-4"},
                }
            },
        }
    )
    details = extract_payment_details(parsed)
    assert details.booking_id is None
    assert details.payment_intent_id == "pi_9"
    assert details.amount_cents == 500
    assert details.requested_points is None
    assert not details.is_booking_fee_flow
    assert status_patch_for(parsed) is PaymentStatus.REFUNDED


def test_unpaid_checkout_is_not_a_success():
    parsed = normalize_event(
        {
            "id": "evt_3",
            "type": "checkout.session.completed",
            "data": {"object": {"payment_status": "unpaid", "amount_total": 100}},
        }
    )
    assert not is_payment_success(parsed)
    assert status_patch_for(parsed) is None


def test_failure_events_map_to_unpaid():
    for event_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
        parsed = normalize_event({"id": "evt", "type": event_type, "data": {"object": {"id": "pi"}}})
        assert status_patch_for(parsed) is PaymentStatus.UNPAID
    unsupported = normalize_event({"id": "evt", "type": "invoice.paid"})
    assert not unsupported.is_supported

"""Booking state machine.

Booking status is modelled as a tagged union: each state is its own frozen
dataclass, and only ``Cancelled`` carries a payload. ``transition`` is pure:
it takes the current state, the requested event and the read-only facts it
needs (parties, insurance, payment status, end date) and either returns the
next state or raises. Persistence lives in the booking service.
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Union
from uuid import UUID

from sitswap.core.exceptions import AuthorizationError, InvalidBookingStatus, ValidationError
from sitswap.domain.payment_state import PaymentStatus


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset(
    {BookingStatus.DECLINED, BookingStatus.CANCELLED, BookingStatus.COMPLETED}
)
CALENDAR_HOLDING_STATUSES = frozenset({BookingStatus.ACCEPTED, BookingStatus.CONFIRMED})

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {
        BookingStatus.ACCEPTED,
        BookingStatus.DECLINED,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.COMPLETED,
    },
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED, BookingStatus.COMPLETED},
    BookingStatus.DECLINED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
}

_ILLEGAL_TRANSITION_MESSAGES = {
    BookingStatus.ACCEPTED: "This sit is no longer awaiting a response.",
    BookingStatus.DECLINED: "This sit is no longer awaiting a response.",
    BookingStatus.CONFIRMED: "This sit cannot be confirmed from its current status.",
    BookingStatus.CANCELLED: "This sit cannot be cancelled from its current status.",
    BookingStatus.COMPLETED: "Only confirmed sits can be marked as completed",
}


# ==================== STATES ====================


@dataclass(frozen=True)
class Pending:
    status: ClassVar[BookingStatus] = BookingStatus.PENDING


@dataclass(frozen=True)
class Accepted:
    status: ClassVar[BookingStatus] = BookingStatus.ACCEPTED


@dataclass(frozen=True)
class Declined:
    status: ClassVar[BookingStatus] = BookingStatus.DECLINED


@dataclass(frozen=True)
class Confirmed:
    status: ClassVar[BookingStatus] = BookingStatus.CONFIRMED


@dataclass(frozen=True)
class Cancelled:
    by: UUID | None
    at: datetime | None
    reason: str | None = None
    status: ClassVar[BookingStatus] = BookingStatus.CANCELLED


@dataclass(frozen=True)
class Completed:
    status: ClassVar[BookingStatus] = BookingStatus.COMPLETED


BookingState = Union[Pending, Accepted, Declined, Confirmed, Cancelled, Completed]

_PAYLOADLESS = {
    BookingStatus.PENDING: Pending(),
    BookingStatus.ACCEPTED: Accepted(),
    BookingStatus.DECLINED: Declined(),
    BookingStatus.CONFIRMED: Confirmed(),
    BookingStatus.COMPLETED: Completed(),
}


def state_from_columns(
    status: str | None,
    cancelled_by: UUID | None = None,
    cancelled_at: datetime | None = None,
    cancellation_reason: str | None = None,
) -> BookingState:
    current = BookingStatus(status or BookingStatus.PENDING.value)
    if current is BookingStatus.CANCELLED:
        return Cancelled(by=cancelled_by, at=cancelled_at, reason=cancellation_reason)
    return _PAYLOADLESS[current]


def state_columns(state: BookingState) -> dict:
    """Column values a state writes to the bookings row."""
    columns: dict = {"status": state.status.value}
    if isinstance(state, Cancelled):
        columns.update(
            cancelled_by=state.by,
            cancelled_at=state.at,
            cancellation_reason=state.reason,
        )
    return columns


# ==================== FACTS & EVENTS ====================


@dataclass(frozen=True)
class Parties:
    sitter_id: UUID
    host_id: UUID
    requested_by: UUID | None = None

    @property
    def requester_id(self) -> UUID:
        # Legacy rows have no requested_by; those were all sitter requests.
        return self.requested_by or self.sitter_id

    @property
    def responder_id(self) -> UUID:
        return self.host_id if self.requester_id == self.sitter_id else self.sitter_id

    def is_participant(self, user_id: UUID) -> bool:
        return user_id in (self.sitter_id, self.host_id)

    def other_party(self, user_id: UUID) -> UUID:
        return self.sitter_id if user_id == self.host_id else self.host_id


@dataclass(frozen=True)
class BookingFacts:
    parties: Parties
    insurance_selected: bool
    payment_status: PaymentStatus
    end_date: date


@dataclass(frozen=True)
class TransitionEvent:
    target: BookingStatus
    actor_id: UUID
    at: datetime
    today: date
    reason: str | None = None


def parse_target(value: str) -> BookingStatus:
    try:
        target = BookingStatus(value)
    except ValueError:
        raise ValidationError("Invalid booking status")
    if target is BookingStatus.PENDING:
        raise ValidationError("Invalid booking status")
    return target


def sitter_may_self_confirm(actor_id: UUID, facts: BookingFacts) -> bool:
    """A sitter who bought insurance may confirm their own request."""
    return actor_id == facts.parties.sitter_id and facts.insurance_selected


# ==================== TRANSITION ====================


def transition(state: BookingState, event: TransitionEvent, facts: BookingFacts) -> BookingState:
    """Return the state ``event`` leads to, or raise.

    Returns ``state`` unchanged when the booking is already in the target
    status; callers treat that as a successful no-op. Non-participants are
    refused before that, so a no-op never exposes the booking to them.
    """
    current = state.status
    target = event.target

    if not facts.parties.is_participant(event.actor_id):
        raise AuthorizationError("Unauthorized")
    if target is current:
        return state
    if current in TERMINAL_STATUSES:
        raise InvalidBookingStatus(f"This sit is already {current.value}.")
    if target not in BOOKING_TRANSITIONS[current]:
        raise InvalidBookingStatus(_ILLEGAL_TRANSITION_MESSAGES[target])

    is_responder = event.actor_id == facts.parties.responder_id
    if target in (BookingStatus.ACCEPTED, BookingStatus.DECLINED) and not is_responder:
        raise AuthorizationError("Only the other party can respond to this request")
    if (
        target is BookingStatus.CONFIRMED
        and not is_responder
        and not sitter_may_self_confirm(event.actor_id, facts)
    ):
        raise AuthorizationError("Only the other party can confirm this sit")

    if target is BookingStatus.COMPLETED:
        if event.today < facts.end_date:
            raise InvalidBookingStatus("This sit can't be completed until the end date")
        if facts.payment_status is not PaymentStatus.PAID:
            raise InvalidBookingStatus("Payment is required before completing this sit")

    if target is BookingStatus.CANCELLED:
        return Cancelled(by=event.actor_id, at=event.at, reason=event.reason)
    return _PAYLOADLESS[target]

"""Reading Stripe webhook events.

Pure functions only: normalising the event envelope and pulling booking and
payment details out of the event object. Nothing here touches the database.
"""

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sitswap.domain.payment_state import PaymentStatus

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CHARGE_REFUNDED = "charge.refunded"

SUPPORTED_EVENT_TYPES = frozenset(
    {
        PAYMENT_INTENT_SUCCEEDED,
        PAYMENT_INTENT_FAILED,
        PAYMENT_INTENT_CANCELED,
        CHECKOUT_SESSION_COMPLETED,
        CHARGE_REFUNDED,
    }
)

BOOKING_FEE_FLOW = "booking_fee_payment"


@dataclass(frozen=True)
class NormalizedEvent:
    id: str
    type: str
    created: int | None
    object: dict[str, Any]

    @property
    def is_supported(self) -> bool:
        return self.type in SUPPORTED_EVENT_TYPES


@dataclass(frozen=True)
class PaymentDetails:
    booking_id: UUID | None
    payment_intent_id: str | None
    flow: str | None
    requested_points: int | None
    amount_cents: int | None
    currency: str | None

    @property
    def is_booking_fee_flow(self) -> bool:
        return self.flow == BOOKING_FEE_FLOW


def normalize_event(raw: dict[str, Any]) -> NormalizedEvent:
    event_id = raw.get("id")
    event_type = raw.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str):
        raise ValueError("Stripe event is missing id or type")
    data = raw.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    created = raw.get("created")
    return NormalizedEvent(
        id=event_id,
        type=event_type,
        created=created if isinstance(created, int) else None,
        object=obj if isinstance(obj, dict) else {},
    )


def _parse_uuid(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _parse_points(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        points = int(str(value).strip())
    except ValueError:
        return None
    return points if points >= 0 else None


def _parse_amount(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _payment_intent_id(event: NormalizedEvent) -> str | None:
    if event.type.startswith("payment_intent."):
        value = event.object.get("id")
    else:
        value = event.object.get("payment_intent")
        if isinstance(value, dict):  # expanded object
            value = value.get("id")
    return value if isinstance(value, str) and value else None


def _amount_cents(event: NormalizedEvent) -> int | None:
    obj = event.object
    if event.type.startswith("payment_intent."):
        received = _parse_amount(obj.get("amount_received"))
        return received if received is not None else _parse_amount(obj.get("amount"))
    if event.type.startswith("checkout.session."):
        return _parse_amount(obj.get("amount_total"))
    if event.type.startswith("charge."):
        return _parse_amount(obj.get("amount"))
    return None


def extract_payment_details(event: NormalizedEvent) -> PaymentDetails:
    metadata = event.object.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    currency = event.object.get("currency")
    return PaymentDetails(
        booking_id=_parse_uuid(metadata.get("booking_id")),
        payment_intent_id=_payment_intent_id(event),
        flow=metadata.get("flow") or None,
        requested_points=_parse_points(metadata.get("requested_points")),
        amount_cents=_amount_cents(event),
        currency=currency.lower() if isinstance(currency, str) else None,
    )


def is_payment_success(event: NormalizedEvent) -> bool:
    if event.type == PAYMENT_INTENT_SUCCEEDED:
        return True
    if event.type == CHECKOUT_SESSION_COMPLETED:
        return event.object.get("payment_status") == "paid"
    return False


def status_patch_for(event: NormalizedEvent) -> PaymentStatus | None:
    """Payment status a generic (non booking-fee) event maps to, if any."""
    if is_payment_success(event):
        return PaymentStatus.PAID
    if event.type in (PAYMENT_INTENT_FAILED, PAYMENT_INTENT_CANCELED):
        return PaymentStatus.UNPAID
    if event.type == CHARGE_REFUNDED:
        return PaymentStatus.REFUNDED
    return None

"""Immutability enforcement for ledger and booking history using SQLAlchemy events."""

import logging
from datetime import UTC, datetime

from sqlalchemy import event, inspect

from sitswap.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

FEE_SNAPSHOT_FIELDS = (
    "service_fee_per_night",
    "cleaning_fee",
    "service_fee_total",
    "total_fee",
)

_registered = False


class ImmutabilityViolationError(ValidationError):
    """Raised when attempting to modify an immutable record."""

    def __init__(self, model_name: str, operation: str, record_id: str):
        self.model_name = model_name
        self.operation = operation
        self.record_id = record_id
        super().__init__(
            f"Immutability violation: Cannot {operation} {model_name} record {record_id}."
        )


def _log_immutability_violation(model_name: str, operation: str, record_id: str) -> None:
    logger.error(
        f"IMMUTABILITY_VIOLATION: Attempted to {operation} {model_name} "
        f"record_id={record_id} at {datetime.now(UTC).isoformat()}"
    )


def _reject(model_name: str, operation: str, record_id: str) -> None:
    _log_immutability_violation(model_name, operation, record_id)
    raise ImmutabilityViolationError(model_name, operation, record_id)


def register_immutability_enforcement() -> None:
    """Register SQLAlchemy event listeners for immutability enforcement.

    Guards ORM flushes only; bulk ``update()`` statements are written by the
    services, which only ever fill missing snapshot fields.
    """
    global _registered
    if _registered:
        return

    from sitswap.models.booking import Booking
    from sitswap.models.points import PointsLedgerEntry

    # ============ PointsLedgerEntry: Append-Only ============

    @event.listens_for(PointsLedgerEntry, "before_update")
    def prevent_ledger_update(mapper, connection, target):
        _reject("PointsLedgerEntry", "UPDATE", str(target.id))

    @event.listens_for(PointsLedgerEntry, "before_delete")
    def prevent_ledger_delete(mapper, connection, target):
        _reject("PointsLedgerEntry", "DELETE", str(target.id))

    # ============ Booking: never deleted, fee snapshot pinned ============

    @event.listens_for(Booking, "before_delete")
    def prevent_booking_delete(mapper, connection, target):
        _reject("Booking", "DELETE", str(target.id))

    @event.listens_for(Booking, "before_update")
    def prevent_fee_snapshot_rewrite(mapper, connection, target):
        state = inspect(target)
        for field in FEE_SNAPSHOT_FIELDS:
            history = state.attrs[field].history
            if not history.has_changes():
                continue
            previous = [value for value in history.deleted if value is not None]
            if previous and history.added and history.added[0] != previous[0]:
                _reject("Booking", f"rewrite {field} on", str(target.id))

    _registered = True
    logger.info("Immutability enforcement registered for ledger and bookings")

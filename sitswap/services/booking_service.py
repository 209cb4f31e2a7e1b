"""Booking lifecycle: creation, status transitions and their side effects.

Every transition is a compare-and-swap on ``bookings.status``. The status
write, the local consequences of the new state (calendar flags, payment
refund marker, points ledger entries) and the outbox rows for collaborator
effects (conversation, notifications, emails) commit in one transaction.
"""

import logging
from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID

from fastapi import status as http_status
from sqlalchemy import or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from sitswap.config import settings
from sitswap.core.db_errors import is_check_violation, is_exclusion_violation
from sitswap.core.exceptions import (
    AppException,
    AuthorizationError,
    ConflictError,
    DatesNotAvailable,
    NotFoundError,
    ValidationError,
)
from sitswap.core.permissions import service_context
from sitswap.core.versioned_write import compare_and_swap
from sitswap.domain.booking_state import (
    CALENDAR_HOLDING_STATUSES,
    BookingFacts,
    BookingStatus,
    Parties,
    TransitionEvent,
    parse_target,
    state_columns,
    state_from_columns,
    transition,
)
from sitswap.domain.fees import FeeSummary, calculate_booking_fees, snapshot_backfill
from sitswap.domain.payment_state import PaymentStatus, parse_payment_status
from sitswap.models.booking import OVERLAP_CONSTRAINT, START_BEFORE_END_CONSTRAINT, Booking
from sitswap.models.listing import Listing
from sitswap.models.user import Profile
from sitswap.schemas.booking import BookingCreate
from sitswap.services.availability_service import availability_service
from sitswap.services.notification_service import notification_service
from sitswap.services.outbox_service import CONVERSATION_ENSURE, drain_after_commit, enqueue
from sitswap.services.points_service import points_service
from sitswap.utils.dates import today

logger = logging.getLogger(__name__)

RELEASING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.DECLINED)
OTHER_CANCELLATION_REASON = "Other"


def stored_fee_summary(booking: Booking) -> FeeSummary:
    """Fees from the booking's own snapshot; defaults only fill legacy gaps."""
    return calculate_booking_fees(
        booking.start_date,
        booking.end_date,
        booking.service_fee_per_night
        if booking.service_fee_per_night is not None
        else settings.service_fee_per_night,
        booking.cleaning_fee if booking.cleaning_fee is not None else settings.cleaning_fee,
        booking.insurance_cost or Decimal("0"),
    )


def _snapshot(booking: Booking) -> dict[str, Decimal | None]:
    return {
        "service_fee_per_night": booking.service_fee_per_night,
        "cleaning_fee": booking.cleaning_fee,
        "service_fee_total": booking.service_fee_total,
        "total_fee": booking.total_fee,
        "cash_due": booking.cash_due,
    }


class BookingService:
    """Service for booking operations."""

    # ==================== READS ====================

    def _booking_query(self):
        return select(Booking).options(
            selectinload(Booking.listing).selectinload(Listing.owner),
            selectinload(Booking.sitter),
        )

    async def get_booking(self, db: AsyncSession, booking_id: UUID) -> Booking | None:
        result = await db.execute(
            self._booking_query()
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_booking(self, db: AsyncSession, booking_id: UUID) -> Booking | None:
        """Read the version a transition will be conditioned on."""
        return await self.get_booking(db, booking_id)

    async def get_booking_for_participant(self, db: AsyncSession, booking_id: UUID, user_id: UUID) -> Booking:
        booking = await self.get_booking(db, booking_id)
        if booking is None:
            raise NotFoundError("Sit")
        if user_id not in (booking.sitter_id, booking.listing.user_id):
            raise AuthorizationError("Unauthorized")
        return booking

    async def list_bookings(self, db: AsyncSession, user_id: UUID) -> list[Booking]:
        result = await db.execute(
            self._booking_query()
            .join(Listing, Booking.listing_id == Listing.id)
            .where(or_(Booking.sitter_id == user_id, Listing.user_id == user_id))
            .order_by(Booking.start_date.desc())
        )
        return list(result.scalars().all())

    def quote(self, start_date: date, end_date: date, insurance_cost: Decimal = Decimal("0")) -> FeeSummary:
        self._validate_dates(start_date, end_date, allow_past=True)
        return calculate_booking_fees(
            start_date,
            end_date,
            settings.service_fee_per_night,
            settings.cleaning_fee,
            insurance_cost,
        )

    # ==================== CREATE ====================

    def _validate_dates(self, start_date: date | None, end_date: date | None, allow_past: bool = False) -> None:
        if start_date is None or end_date is None:
            raise ValidationError("Invalid booking dates.")
        if not allow_past and start_date < today():
            raise ValidationError("Start date cannot be in the past.")
        if end_date <= start_date:
            raise ValidationError("End date must be after the start date.")
        if (end_date - start_date).days > settings.max_booking_nights:
            raise ValidationError(f"Bookings cannot exceed {settings.max_booking_nights} nights.")

    async def create_booking(self, db: AsyncSession, actor_id: UUID, data: BookingCreate) -> Booking:
        """Request a sit on a listing as the sitter."""
        if not data.listing_id:
            raise ValidationError("Missing required booking details.")
        self._validate_dates(data.start_date, data.end_date)

        insurance_cost = Decimal("0")
        if data.insurance_selected:
            if not data.insurance_plan_type:
                raise ValidationError("Please select an insurance plan.")
            if data.insurance_cost is None or data.insurance_cost < 0:
                raise ValidationError("Invalid insurance amount.")
            insurance_cost = data.insurance_cost

        result = await db.execute(
            select(Listing).options(selectinload(Listing.owner)).where(Listing.id == data.listing_id)
        )
        listing = result.scalar_one_or_none()
        if listing is None:
            raise NotFoundError("Listing")
        if listing.user_id == actor_id:
            raise ValidationError("You can't book your own listing.")

        try:
            conflict = await availability_service.has_conflict(db, listing.id, data.start_date, data.end_date)
        except DBAPIError as exc:
            logger.error(f"Availability check failed for listing {listing.id}: {exc}")
            raise AppException(
                status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to verify date availability right now. Please try again.",
            )
        if conflict:
            raise DatesNotAvailable()

        fees = calculate_booking_fees(
            data.start_date,
            data.end_date,
            settings.service_fee_per_night,
            settings.cleaning_fee,
            insurance_cost,
        )
        booking = Booking(
            listing_id=listing.id,
            sitter_id=actor_id,
            requested_by=actor_id,
            match_id=data.match_id,
            start_date=data.start_date,
            end_date=data.end_date,
            status=BookingStatus.PENDING.value,
            payment_status=PaymentStatus.UNPAID.value,
            service_fee_per_night=fees.service_fee_per_night,
            cleaning_fee=fees.cleaning_fee,
            service_fee_total=fees.service_fee_total,
            total_fee=fees.total_fee,
            cash_due=fees.total_fee,
            points_applied=0,
            points_awarded=0,
            insurance_selected=data.insurance_selected,
            insurance_plan_type=data.insurance_plan_type if data.insurance_selected else None,
            insurance_cost=insurance_cost if data.insurance_selected else None,
        )
        db.add(booking)
        try:
            await db.flush()
        except DBAPIError as exc:
            await db.rollback()
            if is_exclusion_violation(exc, OVERLAP_CONSTRAINT):
                raise DatesNotAvailable()
            if is_check_violation(exc, START_BEFORE_END_CONSTRAINT):
                raise ValidationError("End date must be after the start date.")
            raise

        booking.listing = listing
        sitter = await db.get(Profile, actor_id)
        if sitter is not None:
            booking.sitter = sitter
        ctx = service_context("booking_request", actor_id)
        await notification_service.notify_booking_request(db, ctx, booking)
        await db.commit()

        logger.info(f"Booking {booking.id} requested on listing {listing.id} by {actor_id}")
        await drain_after_commit(db, booking.id)
        return await self.get_booking(db, booking.id)

    # ==================== TRANSITIONS ====================

    async def update_booking_status(
        self,
        db: AsyncSession,
        booking_id: UUID,
        status: str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> Booking:
        booking = await self._load_booking(db, booking_id)
        if booking is None:
            raise NotFoundError("Sit")
        target = parse_target(status)

        read_status = booking.status or BookingStatus.PENDING.value
        state = state_from_columns(
            read_status, booking.cancelled_by, booking.cancelled_at, booking.cancellation_reason
        )
        payment_status = parse_payment_status(booking.payment_status)
        facts = BookingFacts(
            parties=Parties(booking.sitter_id, booking.listing.user_id, booking.requested_by),
            insurance_selected=bool(booking.insurance_selected),
            payment_status=payment_status,
            end_date=booking.end_date,
        )
        now = datetime.now(UTC)
        event = TransitionEvent(
            target=target,
            actor_id=actor_id,
            at=now,
            today=today(),
            reason=(reason or "").strip() or None,
        )
        next_state = transition(state, event, facts)
        if next_state.status is state.status:
            return booking

        new_status = next_state.status
        fees = stored_fee_summary(booking)
        points_applied = booking.points_applied or 0
        points_awarded = booking.points_awarded or 0

        values = state_columns(next_state)
        values["updated_at"] = now
        if new_status in CALENDAR_HOLDING_STATUSES:
            if booking.payment_status is None:
                values["payment_status"] = PaymentStatus.UNPAID.value
            values.update(snapshot_backfill(_snapshot(booking), fees, fees.cash_due(points_applied)))

        refund_payment = new_status in RELEASING_STATUSES and payment_status is PaymentStatus.PAID
        if refund_payment:
            values["payment_status"] = PaymentStatus.REFUNDED.value
            values["refunded_at"] = now

        # A released booking that still carries awarded points can only be a
        # legacy row; completed sits are terminal.
        revoke_points = new_status in RELEASING_STATUSES and points_awarded > 0
        if revoke_points:
            values["points_awarded"] = 0

        award_points = new_status is BookingStatus.COMPLETED and points_awarded == 0
        if award_points:
            values["points_awarded"] = fees.nights

        if not await compare_and_swap(db, Booking.status, booking_id, read_status, values):
            await db.rollback()
            logger.info(f"Booking {booking_id} {read_status} -> {new_status.value} lost to a concurrent update")
            raise ConflictError()

        ctx = service_context(f"booking_{new_status.value}", actor_id)
        host_id = booking.listing.user_id

        if new_status in CALENDAR_HOLDING_STATUSES:
            await availability_service.mark_booked(db, ctx, booking)
            await enqueue(
                db,
                CONVERSATION_ENSURE,
                {
                    "listing_id": booking.listing_id,
                    "user_a": actor_id,
                    "user_b": facts.parties.other_party(actor_id),
                    "match_id": booking.match_id,
                },
                aggregate_id=booking.id,
            )

        if new_status in RELEASING_STATUSES:
            await availability_service.release(db, ctx, booking)
            if refund_payment and points_applied > 0:
                await points_service.refund(db, ctx, booking.sitter_id, booking.id, points_applied)
            if revoke_points:
                logger.warning(
                    f"Booking {booking.id} left {read_status} with {points_awarded} awarded points; revoking"
                )
                await points_service.revoke(db, ctx, host_id, booking.id, points_awarded)

        if award_points:
            await points_service.award(db, ctx, host_id, booking.id, fees.nights)

        await notification_service.notify_status_change(
            db,
            ctx,
            booking,
            status=new_status.value,
            actor_id=actor_id,
            payment_status=payment_status.value,
            reason=event.reason,
        )
        await db.commit()

        logger.info(f"Booking {booking.id} {read_status} -> {new_status.value} by {actor_id}")
        await drain_after_commit(db, booking.id)
        return await self.get_booking(db, booking.id)

    async def cancel_booking(
        self,
        db: AsyncSession,
        booking_id: UUID | None,
        actor_id: UUID,
        reason: str | None,
        details: str | None = None,
    ) -> Booking:
        if not booking_id:
            raise ValidationError("Missing booking id.")
        reason = (reason or "").strip()
        details = (details or "").strip()
        if not reason:
            raise ValidationError("Please select a cancellation reason.")
        if reason == OTHER_CANCELLATION_REASON and not details:
            raise ValidationError("Please add a short note for the cancellation.")
        final_reason = f"{reason}: {details}" if details else reason
        return await self.update_booking_status(
            db, booking_id, BookingStatus.CANCELLED.value, actor_id, reason=final_reason
        )


# Singleton instance
booking_service = BookingService()

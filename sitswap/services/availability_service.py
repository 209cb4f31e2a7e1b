"""Availability coordination for listings."""

import logging
from datetime import date
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.core.permissions import ServiceContext
from sitswap.domain.booking_state import CALENDAR_HOLDING_STATUSES
from sitswap.models.booking import AvailabilityRange, Booking

logger = logging.getLogger(__name__)


class AvailabilityService:
    """Conflict detection and calendar flags.

    ``has_conflict`` is an advisory pre-check; the bookings table carries the
    authoritative non-overlap constraint.
    """

    async def has_conflict(
        self,
        db: AsyncSession,
        listing_id: UUID,
        start_date: date,
        end_date: date,
        exclude_booking_id: UUID | None = None,
    ) -> bool:
        query = select(Booking.id).where(
            Booking.listing_id == listing_id,
            Booking.status.in_([status.value for status in CALENDAR_HOLDING_STATUSES]),
            Booking.start_date <= end_date,
            Booking.end_date >= start_date,
        )
        if exclude_booking_id is not None:
            query = query.where(Booking.id != exclude_booking_id)
        result = await db.execute(query.limit(1))
        return result.scalar_one_or_none() is not None

    async def set_booked(
        self,
        db: AsyncSession,
        ctx: ServiceContext,
        listing_id: UUID,
        start_date: date,
        end_date: date,
        is_booked: bool,
    ) -> int:
        """Flip ``is_booked`` on every range of the listing overlapping the dates."""
        result = await db.execute(
            update(AvailabilityRange)
            .where(
                AvailabilityRange.listing_id == listing_id,
                AvailabilityRange.start_date <= end_date,
                AvailabilityRange.end_date >= start_date,
            )
            .values(is_booked=is_booked)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            f"Availability {listing_id} {start_date}..{end_date} is_booked={is_booked} "
            f"({result.rowcount} ranges) [{ctx}]"
        )
        return result.rowcount

    async def mark_booked(self, db: AsyncSession, ctx: ServiceContext, booking: Booking) -> int:
        return await self.set_booked(db, ctx, booking.listing_id, booking.start_date, booking.end_date, True)

    async def release(self, db: AsyncSession, ctx: ServiceContext, booking: Booking) -> int:
        return await self.set_booked(db, ctx, booking.listing_id, booking.start_date, booking.end_date, False)


availability_service = AvailabilityService()

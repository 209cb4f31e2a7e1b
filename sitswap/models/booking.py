"""Booking and availability database models."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import (
    DDL,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    func,
    literal_column,
)
from sqlalchemy.dialects.postgresql import ExcludeConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sitswap.database import Base

if TYPE_CHECKING:
    from sitswap.models.listing import Listing
    from sitswap.models.user import Profile

# Statuses whose date ranges may not overlap on the same listing.
OVERLAP_GUARDED_STATUSES = ("pending", "accepted", "confirmed")
OVERLAP_CONSTRAINT = "bookings_no_overlap_active"
START_BEFORE_END_CONSTRAINT = "bookings_start_before_end"


class AvailabilityRange(Base):
    """A listing's calendar interval with a booked/free flag."""

    __tablename__ = "availability"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    is_booked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Booking(Base):
    """A sit: one engagement between a listing and a sitter over a date range."""

    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("start_date < end_date", name=START_BEFORE_END_CONSTRAINT),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id"), nullable=False, index=True
    )
    sitter_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    requested_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("profiles.id"))
    match_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    # Dates (calendar dates, no timezone)
    start_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    end_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False, index=True
    )  # pending, accepted, declined, confirmed, cancelled, completed
    payment_status: Mapped[str | None] = mapped_column(
        String(20), default="unpaid"
    )  # unpaid, paid, refunded
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    payment_method: Mapped[str | None] = mapped_column(String(20))  # stripe, points, manual
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Fee snapshot (dollars), pinned at creation
    service_fee_per_night: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    cleaning_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    service_fee_total: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    total_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    cash_due: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))

    # Points
    points_applied: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Insurance
    insurance_selected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    insurance_plan_type: Mapped[str | None] = mapped_column(String(50))
    insurance_cost: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))

    # Cancellation
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("profiles.id"))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    listing: Mapped["Listing"] = relationship("Listing")
    sitter: Mapped["Profile"] = relationship("Profile", foreign_keys=[sitter_id])

    @property
    def nights(self) -> int:
        return max(1, (self.end_date - self.start_date).days)


Booking.__table__.append_constraint(
    ExcludeConstraint(
        (Booking.__table__.c.listing_id, "="),
        (
            func.daterange(
                Booking.__table__.c.start_date,
                Booking.__table__.c.end_date,
                literal_column("'[]'"),
            ),
            "&&",
        ),
        name=OVERLAP_CONSTRAINT,
        using="gist",
        where=Booking.__table__.c.status.in_(OVERLAP_GUARDED_STATUSES),
    ).ddl_if(dialect="postgresql")
)

# SQLite has no exclusion constraints; a trigger gives the same guarantee.
event.listen(
    Booking.__table__,
    "after_create",
    DDL(
        f"""
        CREATE TRIGGER {OVERLAP_CONSTRAINT}
        BEFORE INSERT ON bookings
        WHEN NEW.status IN ('pending', 'accepted', 'confirmed')
        BEGIN
            SELECT RAISE(ABORT, '{OVERLAP_CONSTRAINT}')
            WHERE EXISTS (
                SELECT 1 FROM bookings b
                WHERE b.listing_id = NEW.listing_id
                  AND b.status IN ('pending', 'accepted', 'confirmed')
                  AND b.start_date <= NEW.end_date
                  AND b.end_date >= NEW.start_date
            );
        END
        """
    ).execute_if(dialect="sqlite"),
)

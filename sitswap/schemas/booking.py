"""Booking-related Pydantic schemas."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BookingCreate(BaseModel):
    """Schema for requesting a sit.

    Date ordering and span rules are checked by the booking service so the
    caller gets the same messages however the booking is created.
    """

    listing_id: UUID
    start_date: date
    end_date: date
    insurance_selected: bool = False
    insurance_plan_type: str | None = Field(None, max_length=50)
    insurance_cost: Decimal | None = None
    match_id: UUID | None = None


class FeeQuoteRequest(BaseModel):
    start_date: date
    end_date: date
    insurance_cost: Decimal = Decimal("0")


class FeeQuoteResponse(BaseModel):
    nights: int
    service_fee_per_night: Decimal
    cleaning_fee: Decimal
    insurance_cost: Decimal
    service_fee_total: Decimal
    total_fee: Decimal


class BookingStatusUpdate(BaseModel):
    status: str = Field(..., max_length=20)
    reason: str | None = Field(None, max_length=1000)


class BookingCancel(BaseModel):
    reason: str | None = Field(None, max_length=100)
    details: str | None = Field(None, max_length=1000)


class BookingResponse(BaseModel):
    """Schema for booking response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    listing_id: UUID
    sitter_id: UUID
    requested_by: UUID | None
    start_date: date
    end_date: date
    nights: int
    status: str
    payment_status: str | None
    payment_method: str | None
    stripe_payment_intent_id: str | None
    paid_at: datetime | None
    refunded_at: datetime | None

    # Fee snapshot
    service_fee_per_night: Decimal | None
    cleaning_fee: Decimal | None
    service_fee_total: Decimal | None
    total_fee: Decimal | None
    cash_due: Decimal | None

    # Points
    points_applied: int
    points_awarded: int

    # Insurance
    insurance_selected: bool
    insurance_plan_type: str | None
    insurance_cost: Decimal | None

    # Cancellation
    cancelled_by: UUID | None
    cancelled_at: datetime | None
    cancellation_reason: str | None

    created_at: datetime | None
    updated_at: datetime | None

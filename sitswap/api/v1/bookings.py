"""Booking endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.api.deps import get_current_user_id, get_db
from sitswap.core.middleware import booking_limiter
from sitswap.domain.booking_state import BookingStatus
from sitswap.models.booking import Booking
from sitswap.schemas.booking import (
    BookingCancel,
    BookingCreate,
    BookingResponse,
    BookingStatusUpdate,
    FeeQuoteRequest,
    FeeQuoteResponse,
)
from sitswap.services.booking_service import booking_service

router = APIRouter()

CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
Session = Annotated[AsyncSession, Depends(get_db)]


@router.post("/quote", response_model=FeeQuoteResponse)
async def quote_booking(request: FeeQuoteRequest) -> FeeQuoteResponse:
    """Fees for a date range at the current platform rates."""
    summary = booking_service.quote(request.start_date, request.end_date, request.insurance_cost)
    return FeeQuoteResponse(
        nights=summary.nights,
        service_fee_per_night=summary.service_fee_per_night,
        cleaning_fee=summary.cleaning_fee,
        insurance_cost=summary.insurance_cost,
        service_fee_total=summary.service_fee_total,
        total_fee=summary.total_fee,
    )


@router.post(
    "",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_limiter)],
)
async def create_booking(booking_data: BookingCreate, user_id: CurrentUserId, db: Session) -> Booking:
    """Request a sit on a listing."""
    return await booking_service.create_booking(db, user_id, booking_data)


@router.get("", response_model=list[BookingResponse])
async def list_bookings(user_id: CurrentUserId, db: Session) -> list[Booking]:
    """Sits the current user takes part in, as sitter or host."""
    return await booking_service.list_bookings(db, user_id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: UUID, user_id: CurrentUserId, db: Session) -> Booking:
    return await booking_service.get_booking_for_participant(db, booking_id, user_id)


@router.post("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    update: BookingStatusUpdate,
    user_id: CurrentUserId,
    db: Session,
) -> Booking:
    return await booking_service.update_booking_status(db, booking_id, update.status, user_id, update.reason)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(booking_id: UUID, user_id: CurrentUserId, db: Session) -> Booking:
    return await booking_service.update_booking_status(db, booking_id, BookingStatus.ACCEPTED.value, user_id)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(booking_id: UUID, user_id: CurrentUserId, db: Session) -> Booking:
    return await booking_service.update_booking_status(db, booking_id, BookingStatus.DECLINED.value, user_id)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(booking_id: UUID, user_id: CurrentUserId, db: Session) -> Booking:
    return await booking_service.update_booking_status(db, booking_id, BookingStatus.CONFIRMED.value, user_id)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(booking_id: UUID, user_id: CurrentUserId, db: Session) -> Booking:
    return await booking_service.update_booking_status(db, booking_id, BookingStatus.COMPLETED.value, user_id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    cancel_data: BookingCancel,
    user_id: CurrentUserId,
    db: Session,
) -> Booking:
    """Cancel a sit with a reason; ``Other`` needs a short note."""
    return await booking_service.cancel_booking(db, booking_id, user_id, cancel_data.reason, cancel_data.details)

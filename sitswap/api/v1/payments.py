"""Booking fee payment endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.api.deps import get_current_user_id, get_db, get_stripe_gateway
from sitswap.core.middleware import payment_limiter
from sitswap.gateways.stripe_gateway import StripeGateway
from sitswap.schemas.payment import (
    BookingPaymentRequest,
    CheckoutSessionResponse,
    PaymentCompletionResponse,
)
from sitswap.services.payment_service import PaymentService, payment_service

router = APIRouter(dependencies=[Depends(payment_limiter)])


@router.post("/bookings/{booking_id}/complete", response_model=PaymentCompletionResponse)
async def complete_booking_payment(
    booking_id: UUID,
    payment_data: BookingPaymentRequest,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PaymentCompletionResponse:
    """Pay a sit with points (or manually outside production)."""
    booking, result = await payment_service.complete_booking_payment(
        db, booking_id, user_id, payment_data.requested_points
    )
    return PaymentCompletionResponse(
        booking_id=booking.id,
        payment_status=booking.payment_status,
        already_paid=result.already_paid,
        points_applied=booking.points_applied,
        cash_due=booking.cash_due,
    )


@router.post("/bookings/{booking_id}/checkout", response_model=CheckoutSessionResponse)
async def create_booking_checkout(
    booking_id: UUID,
    payment_data: BookingPaymentRequest,
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[StripeGateway, Depends(get_stripe_gateway)],
) -> dict:
    """Start an embedded Stripe Checkout for the cash part of the fees."""
    service = payment_service if gateway is payment_service.gateway else PaymentService(gateway)
    return await service.create_booking_checkout_session(db, booking_id, user_id, payment_data.requested_points)

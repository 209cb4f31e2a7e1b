"""Pydantic schemas for API validation."""

from sitswap.schemas.booking import (
    BookingCancel,
    BookingCreate,
    BookingResponse,
    BookingStatusUpdate,
    FeeQuoteRequest,
    FeeQuoteResponse,
)
from sitswap.schemas.payment import (
    BookingPaymentRequest,
    PaymentCompletionResponse,
    CheckoutSessionResponse,
    PointsBalanceResponse,
    PointsLedgerEntryResponse,
)

__all__ = [
    # Booking
    "BookingCreate",
    "BookingStatusUpdate",
    "BookingCancel",
    "BookingResponse",
    "FeeQuoteRequest",
    "FeeQuoteResponse",
    # Payment
    "BookingPaymentRequest",
    "CheckoutSessionResponse",
    "PaymentCompletionResponse",
    # Points
    "PointsBalanceResponse",
    "PointsLedgerEntryResponse",
]

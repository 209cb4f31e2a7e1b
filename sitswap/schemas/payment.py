"""Payment and points Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BookingPaymentRequest(BaseModel):
    requested_points: int = Field(default=0, ge=0)


class CheckoutSessionResponse(BaseModel):
    booking_id: UUID
    checkout_session_id: str
    client_secret: str | None
    amount: int  # cents
    currency: str
    points_to_apply: int
    cash_due: Decimal


class PaymentCompletionResponse(BaseModel):
    booking_id: UUID
    payment_status: str
    already_paid: bool
    points_applied: int
    cash_due: Decimal


class PointsBalanceResponse(BaseModel):
    user_id: UUID
    balance: int


class PointsLedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: UUID | None
    points_delta: int
    reason: str
    created_at: datetime | None

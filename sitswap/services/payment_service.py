"""Booking fee payments.

Applying a payment is one atomic step: re-check the booking's payment status,
spend the sitter's points and mark the booking paid. On PostgreSQL this is the
``pay_booking_with_points`` SQL function (see the alembic migrations); other
backends run the same steps under row locks in the caller's transaction.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from fastapi import status as http_status
from sqlalchemy import select, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.config import settings
from sitswap.core.db_errors import is_undefined_function
from sitswap.core.exceptions import (
    AppException,
    AuthorizationError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from sitswap.core.permissions import service_context
from sitswap.domain.booking_state import BookingStatus
from sitswap.domain.fees import FeeSummary, clamp_points, snapshot_backfill, to_cents
from sitswap.domain.payment_state import PaymentStatus
from sitswap.gateways.base import PaymentGateway
from sitswap.gateways.stripe_gateway import stripe_gateway
from sitswap.models.booking import Booking
from sitswap.models.user import Profile
from sitswap.services.booking_service import booking_service, stored_fee_summary
from sitswap.services.notification_service import notification_service
from sitswap.services.outbox_service import drain_after_commit
from sitswap.services.points_service import points_service
from sitswap.services.stripe_events import BOOKING_FEE_FLOW

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (BookingStatus.CONFIRMED.value, BookingStatus.ACCEPTED.value)

MANUAL_PAYMENTS_DISABLED = (
    "Manual booking payments are disabled in production. "
    "Configure Stripe checkout for this booking payment flow."
)

_LEGACY_CALL = text(
    "SELECT updated, already_paid, points_applied, cash_due FROM pay_booking_with_points("
    "p_booking_id => :booking_id, p_sitter_id => :sitter_id, "
    "p_requested_points => :requested_points, "
    "p_service_fee_per_night => :service_fee_per_night, p_cleaning_fee => :cleaning_fee, "
    "p_service_fee_total => :service_fee_total, p_total_fee => :total_fee, "
    "p_paid_at => :paid_at)"
)

_EXPANDED_CALL = text(
    "SELECT updated, already_paid, points_applied, cash_due FROM pay_booking_with_points("
    "p_booking_id => :booking_id, p_sitter_id => :sitter_id, "
    "p_requested_points => :requested_points, "
    "p_service_fee_per_night => :service_fee_per_night, p_cleaning_fee => :cleaning_fee, "
    "p_service_fee_total => :service_fee_total, p_total_fee => :total_fee, "
    "p_paid_at => :paid_at, p_cash_paid => :cash_paid)"
)


@dataclass(frozen=True)
class AtomicPaymentRequest:
    booking_id: UUID
    sitter_id: UUID
    requested_points: int
    fees: FeeSummary
    paid_at: datetime
    # Settled cash amount; None for flows without processor settlement data.
    cash_paid: Decimal | None = None


@dataclass(frozen=True)
class AtomicPaymentResult:
    updated: bool
    already_paid: bool
    points_applied: int
    cash_due: Decimal

    @property
    def succeeded(self) -> bool:
        return self.updated or self.already_paid


NOT_UPDATED = AtomicPaymentResult(updated=False, already_paid=False, points_applied=0, cash_due=Decimal("0"))


class PaymentService:
    """Service for applying booking fee payments."""

    def __init__(self, gateway: PaymentGateway | None = None) -> None:
        self.gateway = gateway or stripe_gateway

    # ==================== ATOMIC OPERATION ====================

    async def apply_booking_payment(self, db: AsyncSession, request: AtomicPaymentRequest) -> AtomicPaymentResult:
        """Spend points and mark the booking paid, or report why not.

        Runs inside the caller's transaction; the caller commits.
        """
        if db.get_bind().dialect.name == "postgresql":
            return await self._apply_with_function(db, request)
        return await self._apply_in_session(db, request)

    def _function_params(self, request: AtomicPaymentRequest) -> dict:
        fees = request.fees
        return {
            "booking_id": request.booking_id,
            "sitter_id": request.sitter_id,
            "requested_points": max(0, int(request.requested_points or 0)),
            "service_fee_per_night": fees.service_fee_per_night,
            "cleaning_fee": fees.cleaning_fee,
            "service_fee_total": fees.service_fee_total,
            "total_fee": fees.total_fee,
            "paid_at": request.paid_at,
        }

    async def _call_function(self, db: AsyncSession, statement, params: dict) -> AtomicPaymentResult:
        async with db.begin_nested():
            row = (await db.execute(statement, params)).mappings().first()
        if row is None:
            return NOT_UPDATED
        return AtomicPaymentResult(
            updated=bool(row["updated"]),
            already_paid=bool(row["already_paid"]),
            points_applied=int(row["points_applied"] or 0),
            cash_due=Decimal(row["cash_due"] or 0),
        )

    async def _apply_with_function(self, db: AsyncSession, request: AtomicPaymentRequest) -> AtomicPaymentResult:
        params = self._function_params(request)
        if request.cash_paid is None:
            return await self._call_function(db, _LEGACY_CALL, params)

        try:
            return await self._call_function(db, _EXPANDED_CALL, {**params, "cash_paid": request.cash_paid})
        except DBAPIError as exc:
            if not is_undefined_function(exc):
                raise
            logger.warning(
                f"pay_booking_with_points(p_cash_paid) unavailable for booking {request.booking_id}; "
                "falling back to the earlier signature"
            )
        return await self._call_function(db, _LEGACY_CALL, params)

    async def _apply_in_session(self, db: AsyncSession, request: AtomicPaymentRequest) -> AtomicPaymentResult:
        # Column select: fresh values without touching loaded instances.
        result = await db.execute(
            select(
                Booking.id,
                Booking.sitter_id,
                Booking.status,
                Booking.payment_status,
                Booking.points_applied,
                Booking.cash_due,
                Booking.service_fee_per_night,
                Booking.cleaning_fee,
                Booking.service_fee_total,
                Booking.total_fee,
            )
            .where(Booking.id == request.booking_id)
            .with_for_update()
        )
        booking = result.one_or_none()
        if booking is None or booking.sitter_id != request.sitter_id:
            return NOT_UPDATED
        # Serialises concurrent spends of the same sitter's balance.
        await db.execute(select(Profile.id).where(Profile.id == request.sitter_id).with_for_update())

        if booking.payment_status == PaymentStatus.PAID.value:
            return AtomicPaymentResult(
                updated=False,
                already_paid=True,
                points_applied=booking.points_applied or 0,
                cash_due=booking.cash_due if booking.cash_due is not None else Decimal("0"),
            )
        if booking.status not in PAYABLE_STATUSES or booking.payment_status not in (None, PaymentStatus.UNPAID.value):
            return NOT_UPDATED

        fees = request.fees
        balance = await points_service.get_balance(db, request.sitter_id)
        points = clamp_points(request.requested_points, balance, fees.nights)
        cash_due = fees.cash_due(points)
        if request.cash_paid is not None and to_cents(request.cash_paid) < to_cents(cash_due):
            logger.warning(
                f"Booking {booking.id} payment of {request.cash_paid} is below cash due {cash_due}; not applied"
            )
            return NOT_UPDATED

        values = {
            "payment_status": PaymentStatus.PAID.value,
            "paid_at": request.paid_at,
            "points_applied": points,
            "cash_due": cash_due,
        }
        current = {
            "service_fee_per_night": booking.service_fee_per_night,
            "cleaning_fee": booking.cleaning_fee,
            "service_fee_total": booking.service_fee_total,
            "total_fee": booking.total_fee,
        }
        backfill = snapshot_backfill(current, fees, cash_due)
        backfill.pop("cash_due", None)
        values.update(backfill)

        updated = await db.execute(
            update(Booking)
            .where(
                Booking.id == booking.id,
                Booking.status.in_(PAYABLE_STATUSES),
                Booking.payment_status.is_distinct_from(PaymentStatus.PAID.value),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            return NOT_UPDATED

        if points > 0:
            ctx = service_context("booking_payment_points", request.sitter_id)
            await points_service.spend(db, ctx, request.sitter_id, booking.id, points)
        return AtomicPaymentResult(updated=True, already_paid=False, points_applied=points, cash_due=cash_due)

    # ==================== PAYMENT REFERENCES ====================

    async def link_payment_intent(self, db: AsyncSession, booking_id: UUID, payment_intent_id: str) -> bool:
        """Attach a payment intent to a booking unless one is already attached.

        The first writer wins; a different id arriving later is logged and
        dropped.
        """
        result = await db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.stripe_payment_intent_id.is_(None))
            .values(stripe_payment_intent_id=payment_intent_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        existing = await db.scalar(select(Booking.stripe_payment_intent_id).where(Booking.id == booking_id))
        if existing and existing != payment_intent_id:
            logger.warning(
                f"Booking {booking_id} already linked to {existing}; ignoring payment intent {payment_intent_id}"
            )
        return False

    async def stamp_payment(
        self,
        db: AsyncSession,
        booking_id: UUID,
        payment_method: str,
        payment_intent_id: str | None = None,
    ) -> None:
        await db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(payment_method=payment_method)
            .execution_options(synchronize_session=False)
        )
        if payment_intent_id:
            await self.link_payment_intent(db, booking_id, payment_intent_id)

    # ==================== SITTER ACTIONS ====================

    async def _load_payable(
        self, db: AsyncSession, booking_id: UUID, sitter_id: UUID, not_sitter_message: str
    ) -> Booking:
        booking = await booking_service.get_booking(db, booking_id)
        if booking is None:
            raise NotFoundError("Sit")
        if booking.sitter_id != sitter_id:
            raise AuthorizationError(not_sitter_message)
        if booking.status not in PAYABLE_STATUSES:
            raise ValidationError("This sit isn't ready for payment yet")
        return booking

    async def complete_booking_payment(
        self,
        db: AsyncSession,
        booking_id: UUID,
        sitter_id: UUID,
        requested_points: int = 0,
    ) -> tuple[Booking, AtomicPaymentResult]:
        """Pay a booking without the card processor: points, or manual in development."""
        booking = await self._load_payable(db, booking_id, sitter_id, "Only the sitter can complete payment")
        if booking.payment_status == PaymentStatus.PAID.value:
            return booking, AtomicPaymentResult(
                updated=False,
                already_paid=True,
                points_applied=booking.points_applied or 0,
                cash_due=booking.cash_due or Decimal("0"),
            )

        fees = stored_fee_summary(booking)
        if settings.is_production and not settings.allow_manual_booking_payments:
            balance = await points_service.get_balance(db, sitter_id)
            estimate = fees.cash_due(clamp_points(requested_points, balance, fees.nights))
            if estimate > 0:
                raise PaymentError(MANUAL_PAYMENTS_DISABLED)

        result = await self.apply_booking_payment(
            db,
            AtomicPaymentRequest(
                booking_id=booking.id,
                sitter_id=sitter_id,
                requested_points=requested_points,
                fees=fees,
                paid_at=datetime.now(UTC),
            ),
        )
        if not result.succeeded:
            await db.rollback()
            latest = await booking_service.get_booking(db, booking_id)
            if latest is not None and latest.payment_status == PaymentStatus.PAID.value:
                return latest, AtomicPaymentResult(
                    updated=False,
                    already_paid=True,
                    points_applied=latest.points_applied or 0,
                    cash_due=latest.cash_due or Decimal("0"),
                )
            raise PaymentError("Payment could not be completed.")

        if result.updated:
            method = "points" if result.cash_due <= 0 else "manual"
            await self.stamp_payment(db, booking.id, method)
            ctx = service_context("booking_paid", sitter_id)
            await notification_service.notify_booking_paid(db, ctx, booking)
        await db.commit()

        logger.info(
            f"Booking {booking.id} paid directly by {sitter_id} "
            f"(points {result.points_applied}, cash {result.cash_due})"
        )
        await drain_after_commit(db, booking.id)
        return await booking_service.get_booking(db, booking.id), result

    async def create_booking_checkout_session(
        self,
        db: AsyncSession,
        booking_id: UUID,
        sitter_id: UUID,
        requested_points: int = 0,
    ) -> dict:
        """Start an embedded Stripe Checkout for the cash part of the fees."""
        booking = await self._load_payable(db, booking_id, sitter_id, "Only the sitter can create a payment session")
        if booking.payment_status == PaymentStatus.PAID.value:
            raise ValidationError("This sit has already been paid")

        fees = stored_fee_summary(booking)
        balance = await points_service.get_balance(db, sitter_id)
        points = clamp_points(requested_points, balance, fees.nights)
        cash_due = fees.cash_due(points)
        amount = to_cents(cash_due)
        if amount <= 0:
            raise ValidationError(
                "No cash checkout is required for this sit. Use direct completion for points-only payment."
            )
        if not self.gateway.is_configured:
            raise AppException(
                status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Stripe payment is not configured.",
            )

        result = await self.gateway.create_checkout(
            amount=amount,
            currency=settings.payment_currency,
            description=f"{settings.app_name} sit fees: {booking.listing.title}",
            metadata={
                "flow": BOOKING_FEE_FLOW,
                "booking_id": str(booking.id),
                "sitter_id": str(sitter_id),
                "requested_points": str(points),
            },
            idempotency_key=f"booking:{booking.id}:fee-checkout:{amount}:points:{points}",
        )
        if not result.success:
            logger.warning(f"Checkout creation failed for booking {booking.id}: {result.error_message}")
            raise PaymentError("Unable to start checkout right now. Please try again.")

        logger.info(f"Checkout {result.transaction_id} created for booking {booking.id} ({amount} cents)")
        return {
            "booking_id": booking.id,
            "checkout_session_id": result.transaction_id,
            "client_secret": result.client_secret,
            "amount": amount,
            "currency": settings.payment_currency,
            "points_to_apply": points,
            "cash_due": cash_due,
        }


# Singleton instance
payment_service = PaymentService()


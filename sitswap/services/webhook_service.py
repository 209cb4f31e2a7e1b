"""Stripe webhook reconciliation.

Stripe delivers events at least once and in no particular order. Each event
is reserved in ``stripe_webhook_events`` before any work happens; a redelivery
of a reserved event is acknowledged as a duplicate. If processing fails the
reservation is released so Stripe's retry is processed normally.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.config import settings
from sitswap.core.exceptions import WebhookProcessingError
from sitswap.core.idempotency import IdempotencyKeyStore, Reservation, webhook_event_store
from sitswap.core.permissions import service_context
from sitswap.domain.fees import clamp_points, to_cents
from sitswap.domain.payment_state import PaymentStatus, patch_sources
from sitswap.models.booking import Booking
from sitswap.services.booking_service import booking_service, stored_fee_summary
from sitswap.services.notification_service import notification_service
from sitswap.services.outbox_service import drain_after_commit
from sitswap.services.payment_service import (
    PAYABLE_STATUSES,
    AtomicPaymentRequest,
    PaymentService,
    payment_service,
)
from sitswap.services.points_service import points_service
from sitswap.services.stripe_events import (
    NormalizedEvent,
    PaymentDetails,
    extract_payment_details,
    is_payment_success,
    normalize_event,
    status_patch_for,
)

logger = logging.getLogger(__name__)


class StripeWebhookReconciler:
    """Applies verified Stripe events to bookings."""

    def __init__(
        self,
        store: IdempotencyKeyStore | None = None,
        payments: PaymentService | None = None,
    ) -> None:
        self.store = store or webhook_event_store
        self.payments = payments or payment_service

    async def handle(self, db: AsyncSession, raw_event: dict[str, Any]) -> dict[str, Any]:
        """Process one verified event and return the acknowledgement body."""
        event = normalize_event(raw_event)
        if not event.is_supported:
            logger.info(f"Ignoring Stripe event {event.id} of type {event.type}")
            return {"received": True, "ignored": True}

        reservation = await self.store.reserve(db, event.id, event.type, raw_event)
        if reservation is Reservation.DUPLICATE:
            logger.info(f"Stripe event {event.id} already processed")
            return {"received": True, "duplicate": True}
        if reservation is Reservation.UNRECORDED and settings.is_production:
            logger.error(f"Webhook dedupe table missing in production; refusing event {event.id}")
            raise WebhookProcessingError()

        try:
            details = extract_payment_details(event)
            response = await self._process(db, event, details)
            await db.commit()
        except Exception as exc:
            await db.rollback()
            logger.exception(f"Stripe event {event.id} ({event.type}) failed")
            if reservation is Reservation.FRESH:
                await self.store.release(db, event.id)
            raise WebhookProcessingError() from exc

        if details.booking_id is not None:
            await drain_after_commit(db, details.booking_id)
        return response

    async def _process(self, db: AsyncSession, event: NormalizedEvent, details: PaymentDetails) -> dict[str, Any]:
        if details.booking_id is not None and details.payment_intent_id:
            await self.payments.link_payment_intent(db, details.booking_id, details.payment_intent_id)

        if details.is_booking_fee_flow and is_payment_success(event):
            finalized = await self._finalize_booking_fee(db, event, details)
            return {"received": True, "finalized": finalized, "booking_fee_flow": True}

        patch = status_patch_for(event)
        if patch is not None and details.payment_intent_id:
            await self._apply_status_patch(db, details.payment_intent_id, patch)
        return {"received": True}

    async def _finalize_booking_fee(self, db: AsyncSession, event: NormalizedEvent, details: PaymentDetails) -> bool:
        booking = await booking_service.get_booking(db, details.booking_id)
        if booking is None:
            logger.warning(f"Stripe event {event.id} references unknown booking {details.booking_id}")
            return False
        if booking.status not in PAYABLE_STATUSES:
            logger.info(f"Stripe event {event.id}: booking {booking.id} is {booking.status}; not finalizing")
            return False
        if details.amount_cents is None:
            logger.warning(f"Stripe event {event.id} carries no paid amount; not finalizing")
            return False
        if details.currency != settings.payment_currency:
            logger.warning(
                f"Stripe event {event.id} paid in {details.currency}, expected {settings.payment_currency}"
            )
            return False

        fees = stored_fee_summary(booking)
        balance = await points_service.get_balance(db, booking.sitter_id)
        points = clamp_points(details.requested_points, balance, fees.nights)
        expected_cents = to_cents(fees.cash_due(points))
        if details.amount_cents < expected_cents:
            logger.warning(
                f"Stripe event {event.id} underpaid booking {booking.id}: "
                f"{details.amount_cents} < {expected_cents} cents"
            )
            return False

        result = await self.payments.apply_booking_payment(
            db,
            AtomicPaymentRequest(
                booking_id=booking.id,
                sitter_id=booking.sitter_id,
                requested_points=details.requested_points or 0,
                fees=fees,
                paid_at=datetime.now(UTC),
                cash_paid=Decimal(details.amount_cents) / 100,
            ),
        )
        if not result.succeeded:
            logger.warning(f"Stripe event {event.id}: booking {booking.id} payment not applied")
            return False

        await self.payments.stamp_payment(db, booking.id, "stripe", details.payment_intent_id)
        if result.updated:
            ctx = service_context("stripe_booking_paid", booking.sitter_id)
            await notification_service.notify_booking_paid(db, ctx, booking)
        logger.info(
            f"Booking {booking.id} paid via Stripe event {event.id} "
            f"(points {result.points_applied}, cash {result.cash_due})"
        )
        return True

    async def _apply_status_patch(self, db: AsyncSession, payment_intent_id: str, target: PaymentStatus) -> int:
        sources = [source.value for source in patch_sources(target)]
        condition = Booking.payment_status.in_(sources)
        if PaymentStatus.UNPAID.value in sources:
            condition = or_(condition, Booking.payment_status.is_(None))

        values: dict[str, Any] = {"payment_status": target.value}
        if target is PaymentStatus.PAID:
            values["paid_at"] = datetime.now(UTC)
        elif target is PaymentStatus.REFUNDED:
            values["refunded_at"] = datetime.now(UTC)

        result = await db.execute(
            update(Booking)
            .where(Booking.stripe_payment_intent_id == payment_intent_id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Payment intent {payment_intent_id}: {result.rowcount} booking(s) set {target.value}")
        return result.rowcount


webhook_reconciler = StripeWebhookReconciler()

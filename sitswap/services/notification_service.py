"""Notification Service for in-app notifications and email.

Callers never talk to a channel directly: ``notify`` and ``enqueue_email``
write outbox rows in the caller's transaction, and the outbox dispatcher
later calls ``create_from_payload`` / ``deliver_email`` to do the work.
"""

import logging
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.config import settings
from sitswap.core.exceptions import ExternalServiceError
from sitswap.core.permissions import ServiceContext
from sitswap.models.booking import Booking
from sitswap.models.message import Notification
from sitswap.models.user import Profile
from sitswap.services import email_templates
from sitswap.services.outbox_service import EMAIL_SEND, NOTIFICATION_CREATE, enqueue

logger = logging.getLogger(__name__)


class NotificationService:
    """Service for sending notifications across all channels."""

    # Notification types
    BOOKING_REQUEST = "booking_request"
    BOOKING_PAID = "booking_paid"

    def __init__(self) -> None:
        self._http_client: httpx.AsyncClient | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ==================== ENQUEUE (inside the caller's transaction) ====================

    async def notify(
        self,
        db: AsyncSession,
        ctx: ServiceContext,
        user_id: UUID,
        notification_type: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        aggregate_id: UUID | None = None,
    ) -> None:
        await enqueue(
            db,
            NOTIFICATION_CREATE,
            {
                "user_id": user_id,
                "type": notification_type,
                "title": title,
                "body": body,
                "data": data or {},
                "context": str(ctx),
            },
            aggregate_id=aggregate_id,
        )

    async def enqueue_email(
        self,
        db: AsyncSession,
        ctx: ServiceContext,
        to: str | None,
        email_type: str,
        data: dict[str, Any],
        subject: str | None = None,
        html: str | None = None,
        aggregate_id: UUID | None = None,
    ) -> None:
        if not to:
            logger.info(f"Skipping {email_type} email: recipient has no address [{ctx}]")
            return
        if subject is None or html is None:
            content = email_templates.build_email_content(email_type, data)
            subject = subject or content.subject
            html = html or content.html
        await enqueue(
            db,
            EMAIL_SEND,
            {"to": to, "type": email_type, "subject": subject, "html": html, "context": str(ctx)},
            aggregate_id=aggregate_id,
        )

    # ==================== DELIVERY (called by the outbox dispatcher) ====================

    async def create_notification(
        self,
        db: AsyncSession,
        user_id: UUID,
        notification_type: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=notification_type,
            title=title,
            body=body,
            data=data,
        )
        db.add(notification)
        await db.flush()
        return notification

    async def create_from_payload(self, db: AsyncSession, payload: dict[str, Any]) -> None:
        await self.create_notification(
            db,
            user_id=UUID(payload["user_id"]),
            notification_type=payload["type"],
            title=payload["title"],
            body=payload["body"],
            data=payload.get("data"),
        )

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
    ) -> bool:
        """Send an email via SendGrid.

        Returns:
            bool: True if SendGrid accepted the message
        """
        headers = {
            "Authorization": f"Bearer {settings.sendgrid_api_key}",
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {
                "email": settings.email_from_address,
                "name": settings.email_from_name,
            },
            "subject": subject,
            "content": [{"type": "text/html", "value": html_content}],
        }
        if text_content:
            payload["content"].insert(0, {"type": "text/plain", "value": text_content})

        try:
            response = await self.http_client.post(
                "https://api.sendgrid.com/v3/mail/send",
                headers=headers,
                json=payload,
            )
        except httpx.HTTPError as exc:
            logger.warning(f"SendGrid request failed for {to_email}: {exc}")
            return False
        if response.status_code not in (200, 202):
            logger.warning(f"SendGrid rejected email to {to_email}: HTTP {response.status_code}")
            return False
        return True

    async def deliver_email(self, db: AsyncSession, payload: dict[str, Any]) -> None:
        if not settings.sendgrid_api_key:
            logger.info(f"Email delivery disabled; dropping {payload.get('type')} email to {payload['to']}")
            return
        sent = await self.send_email(payload["to"], payload["subject"], payload["html"])
        if not sent:
            raise ExternalServiceError("sendgrid", f"{payload.get('type')} email to {payload['to']} not accepted")

    # ==================== BOOKING NOTIFICATIONS ====================

    def _email_data(self, booking: Booking, recipient: Profile, url: str, **extra: Any) -> dict[str, Any]:
        return {
            "recipient_name": recipient.full_name,
            "listing_title": booking.listing.title,
            "start_date": booking.start_date,
            "end_date": booking.end_date,
            "url": f"{settings.site_url}{url}",
            **extra,
        }

    async def notify_booking_request(self, db: AsyncSession, ctx: ServiceContext, booking: Booking) -> None:
        """Tell the host about a new sit request."""
        host = booking.listing.owner
        url = f"/sits/{booking.id}"
        await self.notify(
            db,
            ctx,
            user_id=host.id,
            notification_type=self.BOOKING_REQUEST,
            title="New Sit Request",
            body="You have a new sit request for your listing",
            data={"booking_id": booking.id, "listing_id": booking.listing_id, "url": url},
            aggregate_id=booking.id,
        )
        await self.enqueue_email(
            db,
            ctx,
            host.email,
            email_templates.BOOKING_REQUEST,
            self._email_data(booking, host, url),
            aggregate_id=booking.id,
        )

    async def notify_status_change(
        self,
        db: AsyncSession,
        ctx: ServiceContext,
        booking: Booking,
        status: str,
        actor_id: UUID,
        payment_status: str,
        reason: str | None = None,
    ) -> None:
        """Tell the other party about a transition; on cancellation, the actor too."""
        sitter, host = booking.sitter, booking.listing.owner
        listing_title = booking.listing.title
        recipient_id = sitter.id if actor_id == host.id else host.id
        awaiting_payment = status in ("confirmed", "accepted") and payment_status != "paid"
        url = (
            f"/sits/{booking.id}/payment"
            if awaiting_payment and recipient_id == sitter.id
            else f"/sits/{booking.id}"
        )
        listing_suffix = f" for {listing_title}" if listing_title else ""

        if status == "cancelled":
            actor = sitter if actor_id == sitter.id else host
            fallback = "The sitter" if actor_id == sitter.id else "The homeowner"
            canceller_name = actor.full_name or fallback
            reason_suffix = f" Reason: {reason}" if reason else ""
            title = "Sit cancelled"
            body = f"{canceller_name} cancelled the sit{listing_suffix}.{reason_suffix}"
        else:
            canceller_name = None
            title = f"Sit {status.capitalize()}"
            body = f"Your sit has been {status}"

        data = {"booking_id": booking.id, "url": url, "cancellation_reason": reason}
        await self.notify(db, ctx, recipient_id, f"booking_{status}", title, body, data, aggregate_id=booking.id)

        if status == "cancelled":
            await self.notify(
                db,
                ctx,
                actor_id,
                "booking_cancelled",
                "Sit cancelled",
                f"You cancelled the sit{listing_suffix}.",
                {"booking_id": booking.id, "url": f"/sits/{booking.id}", "cancellation_reason": reason},
                aggregate_id=booking.id,
            )
            for recipient in (sitter, host):
                await self.enqueue_email(
                    db,
                    ctx,
                    recipient.email,
                    email_templates.BOOKING_CANCELLED,
                    self._email_data(
                        booking, recipient, f"/sits/{booking.id}", cancelled_by_name=canceller_name, reason=reason
                    ),
                    aggregate_id=booking.id,
                )

        if status in ("confirmed", "accepted"):
            for recipient in (sitter, host):
                needs_payment = awaiting_payment and recipient.id == sitter.id
                recipient_url = f"/sits/{booking.id}/payment" if needs_payment else f"/sits/{booking.id}"
                await self.enqueue_email(
                    db,
                    ctx,
                    recipient.email,
                    email_templates.BOOKING_CONFIRMED,
                    self._email_data(booking, recipient, recipient_url, payment_required=needs_payment),
                    aggregate_id=booking.id,
                )

    async def notify_booking_paid(self, db: AsyncSession, ctx: ServiceContext, booking: Booking) -> None:
        """Tell both parties the fees are paid."""
        sitter, host = booking.sitter, booking.listing.owner
        url = f"/sits/{booking.id}"
        data = {"booking_id": booking.id, "url": url}
        await self.notify(
            db,
            ctx,
            host.id,
            self.BOOKING_PAID,
            "Payment received",
            "The sitter has paid the service and cleaning fees.",
            data,
            aggregate_id=booking.id,
        )
        await self.notify(
            db,
            ctx,
            sitter.id,
            self.BOOKING_PAID,
            "Payment completed",
            "Your payment is complete. The address is now available.",
            data,
            aggregate_id=booking.id,
        )
        for recipient in (host, sitter):
            await self.enqueue_email(
                db,
                ctx,
                recipient.email,
                email_templates.BOOKING_PAID,
                self._email_data(booking, recipient, url),
                aggregate_id=booking.id,
            )


# Singleton instance
notification_service = NotificationService()

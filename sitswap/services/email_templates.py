"""HTML email content for booking lifecycle emails."""

from dataclasses import dataclass
from datetime import UTC, datetime
from html import escape
from typing import Any

from sitswap.config import settings

BOOKING_REQUEST = "booking_request"
BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_CANCELLED = "booking_cancelled"
BOOKING_PAID = "booking_paid"


@dataclass(frozen=True)
class EmailContent:
    subject: str
    preview_text: str
    html: str


def _layout(title: str, paragraphs: list[str], action_url: str | None, action_label: str) -> str:
    body = "".join(
        f'<p style="color: #4b5563; font-size: 16px; line-height: 1.6;">{escape(text)}</p>'
        for text in paragraphs
    )
    button_html = ""
    if action_url:
        button_html = f"""
            <p style="margin-top: 24px;">
                <a href="{escape(action_url)}"
                   style="background-color: #0f766e; color: white; padding: 12px 24px;
                          text-decoration: none; border-radius: 6px; display: inline-block;">
                    {escape(action_label)}
                </a>
            </p>
            """

    return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
        </head>
        <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
                     max-width: 600px; margin: 0 auto; padding: 20px; color: #333;">
            <div style="background-color: #f9fafb; border-radius: 8px; padding: 24px;">
                <h1 style="color: #111827; font-size: 24px; margin-bottom: 16px;">{escape(title)}</h1>
                {body}
                {button_html}
            </div>
            <p style="color: #9ca3af; font-size: 12px; margin-top: 24px; text-align: center;">
                &copy; {datetime.now(UTC).year} {escape(settings.app_name)}. All rights reserved.
            </p>
        </body>
        </html>
        """


def build_email_content(email_type: str, data: dict[str, Any]) -> EmailContent:
    """Render a booking email.

    ``data`` carries ``recipient_name``, ``listing_title``, ``start_date``,
    ``end_date``, ``url`` and, for cancellations, ``cancelled_by_name`` and
    ``reason``.
    """
    name = data.get("recipient_name") or "there"
    title = data.get("listing_title") or "your listing"
    dates = f"{data.get('start_date')} to {data.get('end_date')}"
    url = data.get("url")

    if email_type == BOOKING_REQUEST:
        subject = f"New sit request for {title}"
        lines = [f"Hi {name},", f"You have a new sit request for {title} from {dates}."]
        label = "Review request"
    elif email_type == BOOKING_CONFIRMED:
        subject = f"Your sit at {title} is confirmed"
        lines = [f"Hi {name},", f"The sit at {title} from {dates} is confirmed."]
        if data.get("payment_required"):
            lines.append("Complete the service fee payment to unlock the address.")
        label = "View sit"
    elif email_type == BOOKING_CANCELLED:
        subject = f"Sit cancelled: {title}"
        who = data.get("cancelled_by_name") or "A participant"
        lines = [f"Hi {name},", f"{who} cancelled the sit at {title} from {dates}."]
        if data.get("reason"):
            lines.append(f"Reason: {data['reason']}")
        label = "View sit"
    elif email_type == BOOKING_PAID:
        subject = f"Payment received for {title}"
        lines = [f"Hi {name},", f"The service and cleaning fees for the sit at {title} from {dates} are paid."]
        label = "View sit"
    else:
        raise ValueError(f"Unknown email type: {email_type}")

    return EmailContent(subject=subject, preview_text=lines[1], html=_layout(subject, lines, url, label))

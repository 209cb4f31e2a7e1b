"""Database models."""

from sitswap.models.booking import AvailabilityRange, Booking
from sitswap.models.listing import Listing
from sitswap.models.message import Conversation, Notification
from sitswap.models.outbox import OutboxEvent
from sitswap.models.points import PointsLedgerEntry
from sitswap.models.user import Profile
from sitswap.models.webhook import StripeWebhookEvent

__all__ = [
    # Parties
    "Profile",
    "Listing",
    # Booking
    "Booking",
    "AvailabilityRange",
    # Points
    "PointsLedgerEntry",
    # Collaborators
    "Conversation",
    "Notification",
    # Infrastructure
    "StripeWebhookEvent",
    "OutboxEvent",
]

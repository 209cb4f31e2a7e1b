"""Base payment gateway interface.

Adapters only talk to the processor. Booking and payment rules live in the
services that call them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class GatewayType(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"


class WebhookVerificationError(Exception):
    """Signature or payload of an inbound webhook could not be verified."""


@dataclass
class PaymentResult:
    """Result of a payment operation."""

    success: bool
    transaction_id: str | None = None
    client_secret: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials for outbound calls are present."""

    @abstractmethod
    async def create_checkout(
        self,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Start a hosted/embedded checkout for a one-off charge.

        Args:
            amount: Amount in the smallest currency unit (cents)
            currency: ISO currency code
            description: Line item shown to the payer
            metadata: Copied onto the checkout and its payment intent
            idempotency_key: Processor-side idempotency key

        Returns:
            PaymentResult with the checkout id and client secret
        """

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        """Verify a webhook signature and parse the event.

        Raises:
            WebhookVerificationError: If the signature or payload is invalid
        """

"""Stripe payment gateway adapter."""

import json
import logging

import stripe

from sitswap.config import settings
from sitswap.gateways.base import (
    GatewayType,
    PaymentGateway,
    PaymentResult,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)


class StripeGateway(PaymentGateway):
    """Stripe payment gateway implementation."""

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        tolerance: int | None = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.tolerance = tolerance if tolerance is not None else settings.stripe_webhook_tolerance

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def accepts_webhooks(self) -> bool:
        return bool(self.webhook_secret)

    async def create_checkout(
        self,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentResult:
        """Create an embedded Stripe Checkout Session."""
        if not self.secret_key:
            return PaymentResult(success=False, error_message="Stripe not configured")

        stripe.api_key = self.secret_key
        try:
            session = stripe.checkout.Session.create(
                ui_mode="embedded",
                mode="payment",
                redirect_on_completion="never",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {
                                "name": description,
                                "description": "Service and cleaning fees for your booking",
                            },
                            "unit_amount": amount,
                        },
                        "quantity": 1,
                    }
                ],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe checkout creation failed: {e}")
            return PaymentResult(success=False, error_message=str(e))

        return PaymentResult(
            success=True,
            transaction_id=session.id,
            client_secret=session.client_secret,
            raw_response={"id": session.id, "payment_intent": session.get("payment_intent")},
        )

    def verify_webhook(self, payload: bytes, signature: str) -> dict:
        """Verify the ``Stripe-Signature`` header and return the event as a dict."""
        if not self.webhook_secret:
            raise WebhookVerificationError("webhook secret not configured")

        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(str(e)) from e

        try:
            event = json.loads(text)
        except ValueError as e:
            raise WebhookVerificationError("payload is not valid JSON") from e
        if not isinstance(event, dict):
            raise WebhookVerificationError("payload is not an event object")
        return event


stripe_gateway = StripeGateway()

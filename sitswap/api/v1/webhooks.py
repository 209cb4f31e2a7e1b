"""Webhook endpoints for the payment processor."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.api.deps import get_db, get_stripe_gateway
from sitswap.gateways.base import WebhookVerificationError
from sitswap.gateways.stripe_gateway import StripeGateway
from sitswap.services.webhook_service import webhook_reconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    gateway: Annotated[StripeGateway, Depends(get_stripe_gateway)],
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> dict:
    """Handle Stripe webhook events."""
    if not gateway.accepts_webhooks:
        logger.error("Stripe webhook received but no webhook secret is configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="webhook_not_configured",
        )
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing_signature")

    # Raw body for signature verification
    payload = await request.body()
    try:
        raw_event = gateway.verify_webhook(payload, stripe_signature)
    except WebhookVerificationError as exc:
        logger.warning(f"Rejected Stripe webhook: {exc}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_signature")

    try:
        return await webhook_reconciler.handle(db, raw_event)
    except ValueError as exc:
        logger.warning(f"Malformed Stripe event: {exc}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_payload")

"""Idempotency key store backed by a table with a unique key column.

``reserve`` records a key before work starts and commits immediately, so a
redelivered event is recognised even while the first delivery is still being
processed. ``release`` deletes the key again when processing fails, so the
sender's retry is not mistaken for a duplicate.
"""

import logging
from enum import Enum
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.core.db_errors import is_undefined_table, is_unique_violation
from sitswap.models.webhook import StripeWebhookEvent

logger = logging.getLogger(__name__)


class Reservation(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"
    UNRECORDED = "unrecorded"  # the backing table does not exist


class IdempotencyKeyStore:
    def __init__(self, model: type[StripeWebhookEvent] = StripeWebhookEvent) -> None:
        self.model = model

    async def reserve(
        self,
        db: AsyncSession,
        key: str,
        kind: str,
        payload: dict[str, Any] | None = None,
    ) -> Reservation:
        db.add(self.model(event_id=key, event_type=kind, payload=payload))
        try:
            await db.commit()
        except DBAPIError as exc:
            await db.rollback()
            if is_unique_violation(exc):
                return Reservation.DUPLICATE
            if is_undefined_table(exc):
                logger.warning(
                    f"Idempotency table {self.model.__tablename__} is missing; key {key} not recorded"
                )
                return Reservation.UNRECORDED
            raise
        return Reservation.FRESH

    async def release(self, db: AsyncSession, key: str) -> None:
        await db.execute(delete(self.model).where(self.model.event_id == key))
        await db.commit()


webhook_event_store = IdempotencyKeyStore()

"""Transactional outbox for collaborator side effects.

A booking change writes its side effects (conversation, notifications,
emails) as ``outbox_events`` rows inside the same transaction as the change
itself. ``OutboxDispatcher.drain`` then runs each pending effect in its own
transaction. Failures are counted and retried later; after
``outbox_max_attempts`` the event is parked as ``failed``.

Effect handlers must be idempotent enough to survive a retry after a crash
between running the handler and marking the event processed.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitswap.config import settings
from sitswap.database import session_factory_for
from sitswap.models.outbox import OutboxEvent

logger = logging.getLogger(__name__)

EffectHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]

CONVERSATION_ENSURE = "conversation.ensure"
NOTIFICATION_CREATE = "notification.create"
EMAIL_SEND = "email.send"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


async def enqueue(
    db: AsyncSession,
    effect: str,
    payload: dict[str, Any],
    aggregate_id: UUID | None = None,
) -> OutboxEvent:
    """Record a side effect in the caller's transaction."""
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        effect=effect,
        payload=_jsonable(payload),
        status="pending",
        attempts=0,
        available_at=datetime.now(UTC),
    )
    db.add(event)
    await db.flush()
    return event


def default_handlers() -> dict[str, EffectHandler]:
    from sitswap.services.conversation_service import conversation_service
    from sitswap.services.notification_service import notification_service

    async def ensure_conversation(db: AsyncSession, payload: dict[str, Any]) -> None:
        await conversation_service.ensure_conversation(
            db,
            listing_id=UUID(payload["listing_id"]),
            user_a=UUID(payload["user_a"]),
            user_b=UUID(payload["user_b"]),
            match_id=UUID(payload["match_id"]) if payload.get("match_id") else None,
        )

    return {
        CONVERSATION_ENSURE: ensure_conversation,
        NOTIFICATION_CREATE: notification_service.create_from_payload,
        EMAIL_SEND: notification_service.deliver_email,
    }


class OutboxDispatcher:
    def __init__(
        self,
        handlers: dict[str, EffectHandler] | None = None,
        max_attempts: int | None = None,
        retry_seconds: int | None = None,
    ) -> None:
        self._handlers = handlers
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.retry_seconds = retry_seconds or settings.outbox_retry_seconds

    @property
    def handlers(self) -> dict[str, EffectHandler]:
        if self._handlers is None:
            self._handlers = default_handlers()
        return self._handlers

    async def _pending_ids(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        aggregate_id: UUID | None,
        limit: int,
    ) -> list[UUID]:
        async with session_factory() as db:
            query = (
                select(OutboxEvent.id)
                .where(
                    OutboxEvent.status == "pending",
                    OutboxEvent.available_at <= datetime.now(UTC),
                )
                .order_by(OutboxEvent.created_at, OutboxEvent.id)
                .limit(limit)
            )
            if aggregate_id is not None:
                query = query.where(OutboxEvent.aggregate_id == aggregate_id)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def drain(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        aggregate_id: UUID | None = None,
        limit: int | None = None,
    ) -> int:
        """Run pending effects. Returns how many were processed successfully."""
        processed = 0
        for event_id in await self._pending_ids(
            session_factory, aggregate_id, limit or settings.outbox_batch_size
        ):
            if await self._run_one(session_factory, event_id):
                processed += 1
        return processed

    async def _run_one(self, session_factory: async_sessionmaker[AsyncSession], event_id: UUID) -> bool:
        async with session_factory() as db:
            result = await db.execute(
                select(OutboxEvent)
                .where(OutboxEvent.id == event_id, OutboxEvent.status == "pending")
                .with_for_update(skip_locked=True)
            )
            event = result.scalar_one_or_none()
            if event is None:
                return False

            effect, payload = event.effect, dict(event.payload)
            handler = self.handlers.get(effect)
            try:
                if handler is None:
                    raise LookupError(f"No outbox handler for effect '{effect}'")
                await handler(db, payload)
                event.status = "processed"
                event.attempts += 1
                event.processed_at = datetime.now(UTC)
                await db.commit()
                return True
            except Exception as exc:
                await db.rollback()
                error = f"{type(exc).__name__}: {exc}"

        await self._record_failure(session_factory, event_id, effect, error)
        return False

    async def _record_failure(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_id: UUID,
        effect: str,
        error: str,
    ) -> None:
        async with session_factory() as db:
            event = await db.get(OutboxEvent, event_id)
            if event is None:
                return
            event.attempts += 1
            event.last_error = error[:2000]
            if event.attempts >= self.max_attempts:
                event.status = "failed"
                logger.error(f"Outbox {effect} {event_id} failed permanently after {event.attempts} attempts: {error}")
            else:
                delay = self.retry_seconds * (2 ** (event.attempts - 1))
                event.available_at = datetime.now(UTC) + timedelta(seconds=delay)
                logger.warning(f"Outbox {effect} {event_id} attempt {event.attempts} failed, retrying in {delay}s: {error}")
            await db.commit()


outbox_dispatcher = OutboxDispatcher()


async def backlog(db: AsyncSession) -> dict[str, int]:
    """Count of undelivered effects, by status."""
    result = await db.execute(
        select(OutboxEvent.status, func.count())
        .where(OutboxEvent.status.in_(("pending", "failed")))
        .group_by(OutboxEvent.status)
    )
    counts = {"pending": 0, "failed": 0}
    counts.update({status: count for status, count in result.all()})
    return counts


async def drain_after_commit(db: AsyncSession, aggregate_id: UUID) -> None:
    """Best-effort inline run of an aggregate's effects right after it commits.

    Anything left pending is picked up by the periodic ``drain_outbox`` task.
    """
    try:
        await outbox_dispatcher.drain(session_factory_for(db), aggregate_id=aggregate_id)
    except Exception:
        logger.exception(f"Inline outbox drain for {aggregate_id} failed; leaving effects to the worker")

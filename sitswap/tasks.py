"""Celery background tasks."""

import asyncio
import logging

from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from sitswap.config import settings
from sitswap.services.outbox_service import outbox_dispatcher

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


@shared_task(bind=True, max_retries=3)
def drain_outbox(self, limit: int | None = None):
    """Deliver pending outbox effects whose retry time has come."""
    try:
        processed = run_async(_drain_outbox(limit))
    except Exception as exc:
        raise self.retry(exc=exc, countdown=60)
    return {"status": "success", "processed": processed}


async def _drain_outbox(limit: int | None = None) -> int:
    # Each task run gets its own event loop, so pooled connections cannot be reused.
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        processed = await outbox_dispatcher.drain(session_factory, limit=limit)
    finally:
        await engine.dispose()
    if processed:
        logger.info(f"Outbox drain delivered {processed} effect(s)")
    return processed

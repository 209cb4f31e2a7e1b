"""Optimistic concurrency via conditional update."""

from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute


async def compare_and_swap(
    db: AsyncSession,
    version_column: InstrumentedAttribute,
    entity_id: UUID,
    expected: Any,
    values: dict[str, Any],
) -> bool:
    """Write ``values`` only if ``version_column`` still holds ``expected``.

    Returns False when another writer changed the row first. The caller decides
    what that means; this never retries.
    """
    model = version_column.class_
    stmt = (
        update(model)
        .where(model.id == entity_id, version_column == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1

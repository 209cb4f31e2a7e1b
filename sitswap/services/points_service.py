"""Points ledger service.

Points are earned by hosts when a sit completes (one per night) and spent by
sitters against service fees (one point covers one night). The ledger is
append-only; a balance is the clamped sum of a user's deltas.
"""

import logging
from enum import Enum
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.core.permissions import ServiceContext
from sitswap.models.points import PointsLedgerEntry

logger = logging.getLogger(__name__)


class PointsReason(str, Enum):
    AWARD = "award"  # +nights to the host on completion
    REFUND = "refund"  # +points_applied to the sitter on cancel/decline of a paid sit
    REVOKE = "revoke"  # -points_awarded from the host on cancel/decline
    SPEND = "spend"  # -points applied to a payment


class PointsService:
    """Service for reading balances and appending ledger entries."""

    async def get_balance(self, db: AsyncSession, user_id: UUID) -> int:
        """Current balance, never negative."""
        result = await db.execute(
            select(func.coalesce(func.sum(PointsLedgerEntry.points_delta), 0)).where(
                PointsLedgerEntry.user_id == user_id
            )
        )
        return max(0, int(result.scalar_one()))

    async def list_entries(self, db: AsyncSession, user_id: UUID, limit: int = 100) -> list[PointsLedgerEntry]:
        result = await db.execute(
            select(PointsLedgerEntry)
            .where(PointsLedgerEntry.user_id == user_id)
            .order_by(PointsLedgerEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def append_entry(
        self,
        db: AsyncSession,
        ctx: ServiceContext,
        user_id: UUID,
        booking_id: UUID | None,
        points_delta: int,
        reason: PointsReason,
    ) -> PointsLedgerEntry | None:
        """Append one entry. Returns None if the booking already has it.

        A booking carries at most one entry per (user, reason), so repeating a
        side effect never double-counts points.
        """
        if booking_id is not None:
            existing = await db.execute(
                select(PointsLedgerEntry.id).where(
                    PointsLedgerEntry.booking_id == booking_id,
                    PointsLedgerEntry.user_id == user_id,
                    PointsLedgerEntry.reason == reason.value,
                )
            )
            if existing.scalar_one_or_none() is not None:
                logger.info(f"Points {reason.value} for booking {booking_id} already recorded")
                return None

        entry = PointsLedgerEntry(
            user_id=user_id,
            booking_id=booking_id,
            points_delta=points_delta,
            reason=reason.value,
        )
        db.add(entry)
        await db.flush()
        logger.info(f"Points {reason.value} {points_delta:+d} for user {user_id} [{ctx}]")
        return entry

    async def award(self, db: AsyncSession, ctx: ServiceContext, host_id: UUID, booking_id: UUID, nights: int):
        return await self.append_entry(db, ctx, host_id, booking_id, abs(nights), PointsReason.AWARD)

    async def refund(self, db: AsyncSession, ctx: ServiceContext, sitter_id: UUID, booking_id: UUID, points: int):
        return await self.append_entry(db, ctx, sitter_id, booking_id, abs(points), PointsReason.REFUND)

    async def revoke(self, db: AsyncSession, ctx: ServiceContext, host_id: UUID, booking_id: UUID, points: int):
        return await self.append_entry(db, ctx, host_id, booking_id, -abs(points), PointsReason.REVOKE)

    async def spend(self, db: AsyncSession, ctx: ServiceContext, sitter_id: UUID, booking_id: UUID, points: int):
        return await self.append_entry(db, ctx, sitter_id, booking_id, -abs(points), PointsReason.SPEND)


# Singleton instance
points_service = PointsService()

"""Points ledger model."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from sitswap.database import Base


class PointsLedgerEntry(Base):
    """Append-only point delta for one user.

    Balances are derived by summing deltas. Rows are never updated or deleted;
    corrections are made with compensating entries. A booking gets at most one
    entry per (user, reason).
    """

    __tablename__ = "points_ledger"
    __table_args__ = (
        UniqueConstraint("booking_id", "user_id", "reason", name="uq_points_ledger_booking_reason"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("bookings.id"), index=True
    )
    points_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)  # award, refund, revoke, spend
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

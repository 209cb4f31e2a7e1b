"""Points balance and ledger endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sitswap.api.deps import get_current_user_id, get_db
from sitswap.models.points import PointsLedgerEntry
from sitswap.schemas.payment import PointsBalanceResponse, PointsLedgerEntryResponse
from sitswap.services.points_service import points_service

router = APIRouter()


@router.get("/balance", response_model=PointsBalanceResponse)
async def get_points_balance(
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PointsBalanceResponse:
    balance = await points_service.get_balance(db, user_id)
    return PointsBalanceResponse(user_id=user_id, balance=balance)


@router.get("/ledger", response_model=list[PointsLedgerEntryResponse])
async def get_points_ledger(
    user_id: Annotated[UUID, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
    limit: int = Query(100, ge=1, le=500),
) -> list[PointsLedgerEntry]:
    """Most recent ledger entries first."""
    return await points_service.list_entries(db, user_id, limit=limit)

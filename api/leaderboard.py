from fastapi import APIRouter, Depends, Query

from api.deps import get_read_service
from domain.cache import CachedReadService
from domain.models import SortField, Timeframe

router = APIRouter(prefix="/api/leaderboard", tags=["leaderboard"])


@router.get("")
async def get_leaderboard(
    timeframe: Timeframe = Timeframe.ALL,
    sort_by: SortField = Query(SortField.WIN_RATE, alias="sortBy"),
    page: int = Query(1),
    limit: int = Query(50),
    reads: CachedReadService = Depends(get_read_service),
):
    """Ranked accounts above the minimum-bets floor"""
    return await reads.get_leaderboard(timeframe, sort_by, page, limit)


@router.get("/rank/{address}")
async def get_user_rank(
    address: str,
    timeframe: Timeframe = Timeframe.ALL,
    sort_by: SortField = Query(SortField.WIN_RATE, alias="sortBy"),
    reads: CachedReadService = Depends(get_read_service),
):
    return await reads.get_user_rank(address, timeframe, sort_by)

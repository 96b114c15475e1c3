from fastapi import APIRouter, Depends

from api.deps import get_read_service
from domain.cache import CachedReadService

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("/global")
async def get_global_stats(reads: CachedReadService = Depends(get_read_service)):
    return await reads.get_global_stats()


@router.get("/tokens")
async def get_token_stats(reads: CachedReadService = Depends(get_read_service)):
    return await reads.get_token_stats()


@router.get("/user/{address}")
async def get_user_stats(address: str, reads: CachedReadService = Depends(get_read_service)):
    """Per-user breakdowns, streak and recent outcomes"""
    return await reads.get_user_stats(address)

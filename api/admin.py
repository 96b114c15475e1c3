"""
Maintenance endpoints behind the admin API key.

- Account reconciliation (one address or all)
- Expired-but-unsettled bet report
- Cache flush
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_lifecycle_service, get_read_cache, require_admin_key
from domain.cache import ReadThroughCache
from domain.services import BetLifecycleService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


@router.post("/reconcile")
async def reconcile(
    address: Optional[str] = Query(None),
    service: BetLifecycleService = Depends(get_lifecycle_service),
):
    """Rebuild account counters from bets"""
    if address:
        return {"results": [await service.reconcile_account(address)]}
    results = await service.reconcile_all()
    corrected = [r for r in results if r["corrected"]]
    logger.info(f"Reconciled {len(results)} accounts, {len(corrected)} corrected")
    return {"results": results, "checked": len(results), "corrected": len(corrected)}


@router.get("/expired")
async def expired_bets(service: BetLifecycleService = Depends(get_lifecycle_service)):
    bets = await service.list_expired_active_bets()
    return {"bets": [bet.to_dict() for bet in bets], "count": len(bets)}


@router.post("/cache/clear")
async def clear_cache(cache: ReadThroughCache = Depends(get_read_cache)):
    removed = await cache.clear()
    logger.info(f"Cache cleared: {removed} keys")
    return {"success": True, "removed": removed}

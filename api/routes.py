from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from api.deps import get_lifecycle_service, get_read_service, require_admin_key
from api.schemas import BetPlace, BetPlaced, BetReveal, BetSettle, BetSettled
from domain.cache import CachedReadService
from domain.models import BetStatus, Token
from domain.services import BetLifecycleService
from infra.settings import settings

router = APIRouter(prefix="/api/betting", tags=["betting"])


@router.post("/place", response_model=BetPlaced, status_code=status.HTTP_201_CREATED)
async def place_bet(
    payload: BetPlace,
    service: BetLifecycleService = Depends(get_lifecycle_service),
):
    """Record a bet that was placed on chain"""
    bet = await service.place_bet(
        user_address=payload.user_address,
        token=payload.token,
        amount=payload.amount,
        direction=payload.direction,
        duration=payload.duration,
        tx_hash=payload.tx_hash,
        start_price=payload.start_price,
        commit_hash=payload.commit_hash,
        referrer=payload.referrer,
    )
    return BetPlaced(betId=str(bet.id))


@router.post("/settle", response_model=BetSettled)
async def settle_bet(
    payload: BetSettle,
    service: BetLifecycleService = Depends(get_lifecycle_service),
):
    """Record the outcome of an active bet"""
    bet = await service.settle_bet(
        bet_id=payload.bet_id,
        end_price=payload.end_price,
        is_winner=payload.is_winner,
        payout=payload.payout,
        settle_tx_hash=payload.tx_hash,
    )
    return BetSettled(betId=str(bet.id))


@router.get("/user/{address}")
async def get_user_bets(
    address: str,
    page: int = Query(1),
    limit: int = Query(20),
    bet_status: Optional[BetStatus] = Query(None, alias="status"),
    reads: CachedReadService = Depends(get_read_service),
):
    return await reads.get_user_bets(address, page, limit, bet_status)


@router.get("/active/list")
async def list_active_bets(
    token: Optional[Token] = None,
    limit: int = Query(settings.active_bets_default_limit, ge=1, le=500),
    service: BetLifecycleService = Depends(get_lifecycle_service),
):
    """Active bets, oldest first"""
    bets = await service.list_active_bets(token=token, limit=limit)
    return {"bets": [bet.to_dict() for bet in bets], "count": len(bets)}


@router.get("/{bet_id}")
async def get_bet(
    bet_id: str,
    service: BetLifecycleService = Depends(get_lifecycle_service),
):
    bet = await service.get_bet(bet_id)
    return bet.to_dict()


@router.post("/{bet_id}/reveal")
async def record_reveal(
    bet_id: str,
    payload: BetReveal,
    service: BetLifecycleService = Depends(get_lifecycle_service),
):
    bet = await service.record_reveal(bet_id, payload.reveal_tx_hash)
    return {"success": True, "bet": bet.to_dict()}


@router.post("/{bet_id}/cancel", dependencies=[Depends(require_admin_key)])
async def cancel_bet(
    bet_id: str,
    service: BetLifecycleService = Depends(get_lifecycle_service),
):
    """Administrative cancellation of an active bet"""
    bet = await service.cancel_bet(bet_id)
    return {"success": True, "bet": bet.to_dict()}

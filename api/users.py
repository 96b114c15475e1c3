from fastapi import APIRouter, Depends

from adapters.signatures import SignatureVerifier
from api.deps import get_lifecycle_service, get_signature_verifier
from api.schemas import PreferencesUpdate
from domain.errors import NotFound, Unauthorized
from domain.services import BetLifecycleService
from domain.validation import normalize_address

router = APIRouter(prefix="/api/users", tags=["users"])


def account_view(account) -> dict:
    view = account.summary()
    view.update({
        "preferences": account.preferences,
        "referrer": account.referrer,
        "firstBetTime": account.first_bet_time.isoformat() if account.first_bet_time else None,
    })
    return view


@router.get("/{address}")
async def get_user(address: str, service: BetLifecycleService = Depends(get_lifecycle_service)):
    account = await service.get_account(address)
    if account is None:
        raise NotFound("User has not placed any bets yet")
    return account_view(account)


@router.put("/{address}/preferences")
async def update_preferences(
    address: str,
    payload: PreferencesUpdate,
    service: BetLifecycleService = Depends(get_lifecycle_service),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
):
    """Signed update of notification preferences and referrer"""
    address = normalize_address(address, "address")
    verified = verifier.verify(payload.address, payload.message, payload.signature)
    if verified != address:
        raise Unauthorized("Signature does not belong to this address")

    account = await service.update_preferences(address, payload.preferences, payload.referrer)
    return {"success": True, "user": account_view(account)}

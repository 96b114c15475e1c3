from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from domain.models import Direction, Duration, Token

ADDRESS_REGEX = r"^0x[a-fA-F0-9]{40}$"
HASH_REGEX = r"^0x[a-fA-F0-9]{64}$"
AMOUNT_REGEX = r"^\d+(\.\d+)?$"


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BetPlace(CamelModel):
    user_address: str = Field(alias="userAddress", pattern=ADDRESS_REGEX)
    token: Token
    amount: str = Field(pattern=AMOUNT_REGEX, description="Stake as a decimal string")
    direction: Direction
    duration: Duration
    tx_hash: str = Field(alias="txHash", pattern=HASH_REGEX)
    start_price: str = Field(alias="startPrice", pattern=AMOUNT_REGEX)
    commit_hash: str = Field(alias="commitHash", pattern=HASH_REGEX)
    referrer: Optional[str] = Field(None, max_length=64)


class BetSettle(CamelModel):
    bet_id: str = Field(alias="betId")
    end_price: str = Field(alias="endPrice", pattern=AMOUNT_REGEX)
    is_winner: bool = Field(alias="isWinner", strict=True)
    payout: str = Field(pattern=AMOUNT_REGEX)
    tx_hash: str = Field(alias="txHash", pattern=HASH_REGEX)


class BetReveal(CamelModel):
    reveal_tx_hash: str = Field(alias="revealTxHash", pattern=HASH_REGEX)


class SignedRequest(CamelModel):
    address: str = Field(pattern=ADDRESS_REGEX)
    signature: str = Field(min_length=1)
    message: str = Field(min_length=1, description="JSON document carrying a timestamp")


class PreferencesUpdate(SignedRequest):
    preferences: Optional[Dict[str, Any]] = None
    referrer: Optional[str] = Field(None, max_length=64)


class BetPlaced(BaseModel):
    success: bool = True
    betId: str
    message: str = "Bet placed successfully"


class BetSettled(BaseModel):
    success: bool = True
    betId: str
    message: str = "Bet settled successfully"

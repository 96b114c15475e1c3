import json
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional, Set, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from domain.errors import Unauthorized
from infra.db import utcnow
from infra.settings import settings


logger = logging.getLogger(__name__)


class SignatureVerifier(ABC):
    @abstractmethod
    def verify(self, address: str, message: str, signature: Union[str, bytes]) -> str:
        """Check that ``address`` signed ``message``; returns the lowercase address"""
        pass


def message_timestamp(message: str) -> datetime:
    """
    Timestamp embedded in a signed JSON message.

    Accepts ISO-8601 strings or epoch milliseconds.
    """
    data = json.loads(message)
    raw = data["timestamp"]
    if isinstance(raw, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            raise ValueError("timestamp must be finite")
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EthereumSignatureVerifier(SignatureVerifier):
    """Personal-sign (EIP-191) verification with a freshness window on the message"""

    def __init__(self, max_age_sec: Optional[int] = None):
        self.max_age = timedelta(seconds=max_age_sec or settings.signature_max_age_sec)

    def verify(self, address: str, message: str, signature: Union[str, bytes]) -> str:
        try:
            recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as e:
            logger.warning(f"Signature recovery failed for {address}: {e}")
            raise Unauthorized("Signature verification failed", original_error=e)

        if recovered.lower() != address.lower():
            raise Unauthorized("Invalid signature")

        try:
            signed_at = message_timestamp(message)
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
            raise Unauthorized("Signature verification failed", original_error=e)
        now = utcnow()
        if signed_at < now - self.max_age:
            raise Unauthorized("Message expired")
        if signed_at > now + self.max_age:
            raise Unauthorized("Message timestamp is in the future")

        return address.lower()


class MockSignatureVerifier(SignatureVerifier):
    """Accepts any signature for addresses in ``allowed`` (all addresses when None)"""

    def __init__(self, allowed: Optional[Set[str]] = None):
        self.allowed = {a.lower() for a in allowed} if allowed is not None else None
        self.calls = []

    def verify(self, address: str, message: str, signature: Union[str, bytes]) -> str:
        self.calls.append((address, message, signature))
        if self.allowed is not None and address.lower() not in self.allowed:
            raise Unauthorized("Invalid signature")
        return address.lower()

"""
Shared data-model helpers for bets and accounts.

Shape checks for addresses and hashes, exact decimal parsing, display
rounding and the small pure functions used by the aggregation views.
"""

import hashlib
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Optional, Tuple

from domain.errors import ValidationError

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

PERCENT_QUANTUM = Decimal("0.01")
MONEY_QUANTUM = Decimal("0.0001")

AVATARS = ("🦄", "🚀", "⚡", "🔥", "💎", "🎯", "🏆", "⭐", "🌟", "💫")

STREAK_WINDOW = 20


def normalize_address(address: str, field: str = "userAddress") -> str:
    """Validate an EVM address and return its lowercase form"""
    if not isinstance(address, str) or not ADDRESS_PATTERN.match(address):
        raise ValidationError.for_field(field, "must be a 0x-prefixed 40 hex digit address")
    return address.lower()


def validate_hash(value: str, field: str) -> str:
    if not isinstance(value, str) or not HASH_PATTERN.match(value):
        raise ValidationError.for_field(field, "must be a 0x-prefixed 64 hex digit hash")
    return value.lower()


def parse_amount(value, field: str, allow_zero: bool = True) -> Decimal:
    """Parse a decimal string exactly; binary floats are rejected outright."""
    if isinstance(value, float) or isinstance(value, bool):
        raise ValidationError.for_field(field, "must be a decimal string, not a float")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError.for_field(field, "must be a numeric string")
    if not amount.is_finite():
        raise ValidationError.for_field(field, "must be a finite number")
    if amount < 0:
        raise ValidationError.for_field(field, "must not be negative")
    if not allow_zero and amount == 0:
        raise ValidationError.for_field(field, "must be greater than zero")
    return amount


def percent(numerator, denominator) -> float:
    """numerator/denominator as a percentage rounded to 2 dp (0 on empty)"""
    if not denominator:
        return 0.0
    value = Decimal(numerator) * 100 / Decimal(denominator)
    return float(value.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP))


def money(value: Optional[Decimal]) -> str:
    """Display form of an exact amount: 4 dp, never a float"""
    value = Decimal(value or 0)
    return str(value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP))


def display_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def avatar_for(address: str) -> str:
    """Deterministic decorative avatar; same address, same avatar."""
    digest = hashlib.sha256(address.lower().encode()).digest()
    return AVATARS[int.from_bytes(digest[:4], "big") % len(AVATARS)]


def current_streak(outcomes: Iterable[bool]) -> Tuple[Optional[str], int]:
    """
    Length of the run of identical outcomes at the head of ``outcomes``.

    ``outcomes`` is newest first. Only the first STREAK_WINDOW entries are
    looked at. Returns ("win" | "loss" | None, length).
    """
    streak_type = None
    length = 0
    first = None
    for index, is_winner in enumerate(outcomes):
        if index >= STREAK_WINDOW:
            break
        if first is None:
            first = bool(is_winner)
            streak_type = "win" if first else "loss"
        if bool(is_winner) != first:
            break
        length += 1
    return streak_type, length


def coerce_choice(enum_cls, value, field: str):
    """Map a raw value onto one of the enumerated choices"""
    if isinstance(value, enum_cls):
        return value
    try:
        if issubclass(enum_cls, int) and not isinstance(value, bool):
            value = int(value)
        return enum_cls(value)
    except (TypeError, ValueError):
        allowed = ", ".join(str(member.value) for member in enum_cls)
        raise ValidationError.for_field(field, f"must be one of {allowed}")

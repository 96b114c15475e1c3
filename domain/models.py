import enum
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, Date, Enum, Index, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from domain.validation import display_address, money, percent
from infra.db import Base, DecimalString, Money, UTCDateTime, utcnow


class Token(str, enum.Enum):
    ETH = "ETH"
    BTC = "BTC"
    LINK = "LINK"


class Direction(str, enum.Enum):
    UP = "up"
    DOWN = "down"


class Duration(enum.IntEnum):
    FIVE_MINUTES = 300
    FIFTEEN_MINUTES = 900
    ONE_HOUR = 3600


class BetStatus(str, enum.Enum):
    ACTIVE = "active"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class SortField(str, enum.Enum):
    WIN_RATE = "winRate"
    TOTAL_WON = "totalWon"
    TOTAL_BETS = "totalBets"
    PROFIT = "profit"


class Timeframe(str, enum.Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token: Mapped[Token] = mapped_column(Enum(Token, values_callable=_enum_values), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    direction: Mapped[Direction] = mapped_column(
        Enum(Direction, values_callable=_enum_values), nullable=False
    )
    duration: Mapped[int] = mapped_column(Integer, nullable=False)
    start_price: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    end_price: Mapped[Optional[Decimal]] = mapped_column(DecimalString)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    settled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    status: Mapped[BetStatus] = mapped_column(
        Enum(BetStatus, values_callable=_enum_values), default=BetStatus.ACTIVE, nullable=False
    )
    is_winner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payout: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), unique=True, nullable=False)
    settle_tx_hash: Mapped[Optional[str]] = mapped_column(String(66))
    commit_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    revealed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reveal_tx_hash: Mapped[Optional[str]] = mapped_column(String(66))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_bets_user_start", user_address, start_time),
        Index("ix_bets_status_start", status, start_time),
        Index("ix_bets_token_status", token, status),
    )

    @property
    def expires_at(self) -> datetime:
        return self.start_time + timedelta(seconds=self.duration)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once the betting window has passed; status is unaffected"""
        return (now or utcnow()) > self.expires_at

    def time_remaining(self, now: Optional[datetime] = None) -> float:
        """Seconds left in the betting window, never negative"""
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return max(0.0, remaining)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "userAddress": self.user_address,
            "token": self.token.value,
            "amount": str(self.amount),
            "direction": self.direction.value,
            "duration": self.duration,
            "startPrice": str(self.start_price),
            "endPrice": str(self.end_price) if self.end_price is not None else None,
            "startTime": self.start_time.isoformat(),
            "settledAt": self.settled_at.isoformat() if self.settled_at else None,
            "status": self.status.value,
            "isWinner": self.is_winner,
            "payout": str(self.payout),
            "txHash": self.tx_hash,
            "settleTxHash": self.settle_tx_hash,
            "commitHash": self.commit_hash,
            "revealed": self.revealed,
            "revealTxHash": self.reveal_tx_hash,
        }


class UserAccount(Base):
    __tablename__ = "user_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False)
    total_bets: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_wins: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_wagered: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_won: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_settled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_bet_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    bets_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_bet_day: Mapped[Optional[date]] = mapped_column(Date)
    first_bet_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    preferences: Mapped[Dict[str, Any]] = mapped_column(
        JSON, default=lambda: {"notifications": True, "newsletter": False}, nullable=False
    )
    referrer: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_user_accounts_last_bet", last_bet_time),
        Index("ix_user_accounts_total_bets", total_bets),
        Index("ix_user_accounts_total_won", total_won),
    )

    @property
    def win_rate(self) -> Decimal:
        """Percentage of placed bets that won; 0 with no bets"""
        if not self.total_bets:
            return Decimal("0")
        return Decimal(self.total_wins) * 100 / Decimal(self.total_bets)

    @property
    def profit(self) -> Decimal:
        return Decimal(self.total_won) - Decimal(self.total_wagered)

    @property
    def average_bet_size(self) -> Decimal:
        if not self.total_bets:
            return Decimal("0")
        return Decimal(self.total_wagered) / Decimal(self.total_bets)

    def bets_on(self, day: date) -> int:
        """Same-day counter as seen on ``day``; a stale reference day reads as 0"""
        if self.last_bet_day is None or self.last_bet_day < day:
            return 0
        return self.bets_today

    def can_place_bet(self, limit: int, day: date) -> bool:
        return limit <= 0 or self.bets_on(day) < limit

    def record_placement(self, amount: Decimal, placed_at: datetime) -> None:
        """Roll a new bet into the counters, resetting the daily counter on a new day"""
        day = placed_at.date()
        self.bets_today = self.bets_on(day) + 1
        self.last_bet_day = day
        self.total_bets = (self.total_bets or 0) + 1
        self.total_wagered = Decimal(self.total_wagered or 0) + amount
        self.last_bet_time = placed_at
        if self.first_bet_time is None:
            self.first_bet_time = placed_at

    def record_settlement(self, is_winner: bool, payout: Decimal) -> None:
        self.total_settled = (self.total_settled or 0) + 1
        if is_winner:
            self.total_wins = (self.total_wins or 0) + 1
            self.total_won = Decimal(self.total_won or 0) + payout

    def summary(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "displayAddress": display_address(self.address),
            "totalBets": self.total_bets,
            "totalWins": self.total_wins,
            "totalSettled": self.total_settled,
            "winRate": percent(self.total_wins, self.total_bets),
            "totalWagered": money(self.total_wagered),
            "totalWon": money(self.total_won),
            "profit": money(self.profit),
            "averageBetSize": money(self.average_bet_size),
            "lastBetTime": self.last_bet_time.isoformat() if self.last_bet_time else None,
        }

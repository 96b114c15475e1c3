"""
Read-only aggregate views over bets and accounts.

Nothing here writes or caches; every view can be recomputed at any time.
Ordering, paging and grouping run in the record store; amounts come back as
Decimal and are only rounded when rendered.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Float, and_, case, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from domain.errors import translate_store_errors
from domain.models import Bet, BetStatus, Direction, SortField, Timeframe, UserAccount
from domain.services import validate_pagination
from domain.validation import (
    STREAK_WINDOW,
    avatar_for,
    current_streak,
    money,
    normalize_address,
    percent,
)
from infra.db import hour_bucket, utcnow
from infra.settings import settings

RECENT_OUTCOMES = 10
ACTIVITY_WINDOW_HOURS = 24

ZERO = Decimal("0")


def timeframe_start(timeframe: Timeframe, now: Optional[datetime] = None) -> Optional[datetime]:
    """Lower bound on lastBetTime for a leaderboard window (UTC)"""
    now = now or utcnow()
    if timeframe == Timeframe.TODAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if timeframe == Timeframe.WEEK:
        return now - timedelta(days=7)
    if timeframe == Timeframe.MONTH:
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return None


def ranking_columns(account, sort_by: SortField) -> List:
    """
    Sort expressions for ``account`` (the mapped class or an alias of it),
    most significant first; larger is better.

    Win rate divides in double precision. Equal ratios divide to the same
    double, so 1/3 and 2/6 tie and fall through to total bets.
    """
    if sort_by == SortField.TOTAL_WON:
        return [account.total_won]
    if sort_by == SortField.TOTAL_BETS:
        return [account.total_bets]
    if sort_by == SortField.PROFIT:
        return [account.total_won - account.total_wagered]
    win_ratio = case(
        (account.total_bets > 0, cast(account.total_wins, Float) / account.total_bets),
        else_=0.0,
    )
    return [win_ratio, account.total_bets]


def outranks(keys: List, other_keys: List):
    """Lexicographic ``keys > other_keys`` over paired sort expressions"""
    clauses = []
    for index, (key, other) in enumerate(zip(keys, other_keys)):
        ties = [k == o for k, o in zip(keys[:index], other_keys[:index])]
        clauses.append(and_(*ties, key > other))
    return or_(*clauses)


def leaderboard_entry(account: UserAccount, rank: int) -> Dict[str, Any]:
    entry = account.summary()
    entry.update({
        "rank": rank,
        "avatar": avatar_for(account.address),
    })
    return entry


def _settled_wins(row) -> int:
    return row.bets if row.status == BetStatus.SETTLED and row.is_winner else 0


class AggregationService:
    def __init__(self, db: AsyncSession, min_bets: Optional[int] = None):
        self.db = db
        self.min_bets = settings.leaderboard_min_bets if min_bets is None else min_bets

    async def _account(self, address: str) -> Optional[UserAccount]:
        return (await self.db.execute(
            select(UserAccount)
            .where(UserAccount.address == address)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

    # User statistics

    @translate_store_errors("user stats")
    async def user_stats(self, address: str) -> Dict[str, Any]:
        """Totals, per-token and per-duration breakdowns, recent outcomes and streak"""
        address = normalize_address(address, "address")
        account = await self._account(address)
        if account is None:
            return {
                "exists": False,
                "address": address,
                "message": "User has not placed any bets yet",
            }

        groups = (await self.db.execute(
            select(
                Bet.token,
                Bet.duration,
                Bet.status,
                Bet.is_winner,
                func.count().label("bets"),
                func.sum(Bet.amount).label("volume"),
                func.sum(Bet.payout).label("payout"),
            )
            .where(Bet.user_address == address)
            .group_by(Bet.token, Bet.duration, Bet.status, Bet.is_winner)
        )).all()

        tokens: Dict[str, Dict[str, Any]] = {}
        durations: Dict[int, Dict[str, int]] = {}
        for row in groups:
            wins = _settled_wins(row)
            t = tokens.setdefault(row.token.value, {
                "totalBets": 0, "wins": 0, "volume": ZERO, "profit": ZERO,
            })
            t["totalBets"] += row.bets
            t["wins"] += wins
            t["volume"] += row.volume or ZERO
            t["profit"] += (row.payout or ZERO) - (row.volume or ZERO)
            d = durations.setdefault(row.duration, {"totalBets": 0, "wins": 0})
            d["totalBets"] += row.bets
            d["wins"] += wins

        settled = (await self.db.execute(
            select(Bet.id, Bet.is_winner, Bet.settled_at)
            .where(Bet.user_address == address, Bet.status == BetStatus.SETTLED)
            .order_by(Bet.settled_at.desc())
            .limit(STREAK_WINDOW)
        )).all()
        streak_type, streak_length = current_streak(row.is_winner for row in settled)

        return {
            "exists": True,
            "address": address,
            "basicStats": {
                "totalBets": account.total_bets,
                "totalWins": account.total_wins,
                "totalSettled": account.total_settled,
                "winRate": percent(account.total_wins, account.total_bets),
                "totalWagered": money(account.total_wagered),
                "totalWon": money(account.total_won),
                "profit": money(account.profit),
                "averageBetSize": money(account.average_bet_size),
            },
            "tokenBreakdown": [
                {
                    "token": token,
                    "totalBets": t["totalBets"],
                    "wins": t["wins"],
                    "winRate": percent(t["wins"], t["totalBets"]),
                    "volume": money(t["volume"]),
                    "profit": money(t["profit"]),
                }
                for token, t in sorted(tokens.items())
            ],
            "durationBreakdown": [
                {
                    "duration": duration,
                    "totalBets": d["totalBets"],
                    "wins": d["wins"],
                    "winRate": percent(d["wins"], d["totalBets"]),
                }
                for duration, d in sorted(durations.items())
            ],
            "streak": {"type": streak_type, "length": streak_length},
            "recentPerformance": [
                {
                    "betId": str(row.id),
                    "isWinner": row.is_winner,
                    "settledAt": row.settled_at.isoformat() if row.settled_at else None,
                }
                for row in settled[:RECENT_OUTCOMES]
            ],
            "lastUpdated": utcnow().isoformat(),
        }

    # Leaderboard

    def _eligibility(self, account, timeframe: Timeframe) -> List:
        conditions = [account.total_bets >= self.min_bets]
        start = timeframe_start(timeframe)
        if start is not None:
            conditions.append(account.last_bet_time >= start)
        return conditions

    @translate_store_errors("leaderboard")
    async def leaderboard(
        self,
        timeframe: Timeframe = Timeframe.ALL,
        sort_by: SortField = SortField.WIN_RATE,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """Ranked page of accounts above the minimum-bets floor"""
        validate_pagination(page, limit)
        conditions = self._eligibility(UserAccount, timeframe)
        offset = (page - 1) * limit

        total = (await self.db.execute(
            select(func.count()).select_from(UserAccount).where(*conditions)
        )).scalar() or 0
        # address as final key keeps page boundaries stable between requests
        order = [key.desc() for key in ranking_columns(UserAccount, sort_by)]
        accounts = (await self.db.execute(
            select(UserAccount)
            .where(*conditions)
            .order_by(*order, UserAccount.address.asc())
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )).scalars().all()

        return {
            "leaderboard": [
                leaderboard_entry(account, offset + index + 1)
                for index, account in enumerate(accounts)
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
            "timeframe": timeframe.value,
            "sortBy": sort_by.value,
        }

    @translate_store_errors("user rank")
    async def user_rank(
        self,
        address: str,
        timeframe: Timeframe = Timeframe.ALL,
        sort_by: SortField = SortField.WIN_RATE,
    ) -> Dict[str, Any]:
        """1 + number of eligible accounts strictly better; null below the floor"""
        address = normalize_address(address, "address")
        account = await self._account(address)

        start = timeframe_start(timeframe)
        eligible = (
            account is not None
            and account.total_bets >= self.min_bets
            and (start is None or (account.last_bet_time is not None and account.last_bet_time >= start))
        )
        if not eligible:
            return {
                "rank": None,
                "message": "User not found or insufficient bets for ranking",
            }

        me = aliased(UserAccount, name="me")
        better = (await self.db.execute(
            select(func.count())
            .select_from(UserAccount)
            .join(me, me.address == address)
            .where(
                *self._eligibility(UserAccount, timeframe),
                outranks(ranking_columns(UserAccount, sort_by), ranking_columns(me, sort_by)),
            )
        )).scalar() or 0

        return {
            "rank": better + 1,
            "timeframe": timeframe.value,
            "sortBy": sort_by.value,
            "user": account.summary(),
        }

    # Global statistics

    @translate_store_errors("global stats")
    async def global_stats(self) -> Dict[str, Any]:
        now = utcnow()
        total_users = (await self.db.execute(select(func.count()).select_from(UserAccount))).scalar() or 0

        groups = (await self.db.execute(
            select(
                Bet.token,
                Bet.status,
                Bet.is_winner,
                func.count().label("bets"),
                func.sum(Bet.amount).label("volume"),
                func.sum(Bet.payout).label("payout"),
            )
            .group_by(Bet.token, Bet.status, Bet.is_winner)
        )).all()

        total_bets = 0
        total_volume = ZERO
        total_payout = ZERO
        active = 0
        settled = 0
        wins = 0
        per_token: Dict[str, Dict[str, Any]] = {}
        for row in groups:
            volume = row.volume or ZERO
            payout = row.payout or ZERO
            total_bets += row.bets
            total_volume += volume
            total_payout += payout
            t = per_token.setdefault(row.token.value, {
                "count": 0, "volume": ZERO, "payout": ZERO, "settled": 0, "wins": 0,
            })
            t["count"] += row.bets
            t["volume"] += volume
            t["payout"] += payout
            if row.status == BetStatus.ACTIVE:
                active += row.bets
            elif row.status == BetStatus.SETTLED:
                settled += row.bets
                t["settled"] += row.bets
            wins += _settled_wins(row)
            t["wins"] += _settled_wins(row)

        bucket = hour_bucket(Bet.start_time)
        activity = (await self.db.execute(
            select(bucket.label("hour"), func.count().label("bets"), func.sum(Bet.amount).label("volume"))
            .where(Bet.start_time >= now - timedelta(hours=ACTIVITY_WINDOW_HOURS))
            .group_by(bucket)
            .order_by(bucket)
        )).all()

        token_stats = [
            {
                "token": token,
                "count": t["count"],
                "volume": money(t["volume"]),
                "payout": money(t["payout"]),
                "winRate": percent(t["wins"], t["settled"]),
                "houseEdge": percent(t["volume"] - t["payout"], t["volume"]),
            }
            for token, t in sorted(per_token.items(), key=lambda item: item[1]["volume"], reverse=True)
        ]

        return {
            "totalBets": total_bets,
            "totalUsers": total_users,
            "totalVolume": money(total_volume),
            "totalPayout": money(total_payout),
            "activeBets": active,
            "globalWinRate": percent(wins, settled),
            "tokenStats": token_stats,
            "recentActivity": [
                {"hour": row.hour, "count": row.bets, "volume": money(row.volume)}
                for row in activity
            ],
            "lastUpdated": now.isoformat(),
        }

    @translate_store_errors("token stats")
    async def token_stats(self) -> Dict[str, Any]:
        """Per-token performance: counts by status and direction, win rate, house edge"""
        groups = (await self.db.execute(
            select(
                Bet.token,
                Bet.status,
                Bet.is_winner,
                Bet.direction,
                func.count().label("bets"),
                func.sum(Bet.amount).label("volume"),
                func.sum(Bet.payout).label("payout"),
            )
            .group_by(Bet.token, Bet.status, Bet.is_winner, Bet.direction)
        )).all()

        stats: Dict[str, Dict[str, Any]] = {}
        for row in groups:
            s = stats.setdefault(row.token.value, {
                "totalBets": 0, "activeBets": 0, "settledBets": 0, "wins": 0,
                "totalVolume": ZERO, "totalPayout": ZERO,
                "upBets": 0, "downBets": 0,
            })
            s["totalBets"] += row.bets
            s["totalVolume"] += row.volume or ZERO
            s["totalPayout"] += row.payout or ZERO
            if row.status == BetStatus.ACTIVE:
                s["activeBets"] += row.bets
            elif row.status == BetStatus.SETTLED:
                s["settledBets"] += row.bets
            s["wins"] += _settled_wins(row)
            if row.direction == Direction.UP:
                s["upBets"] += row.bets
            else:
                s["downBets"] += row.bets

        ordered = sorted(stats.items(), key=lambda item: item[1]["totalVolume"], reverse=True)
        return {
            "tokens": [
                {
                    "token": token,
                    "totalBets": s["totalBets"],
                    "activeBets": s["activeBets"],
                    "settledBets": s["settledBets"],
                    "wins": s["wins"],
                    "totalVolume": money(s["totalVolume"]),
                    "totalPayout": money(s["totalPayout"]),
                    "upBets": s["upBets"],
                    "downBets": s["downBets"],
                    "winRate": percent(s["wins"], s["settledBets"]),
                    "houseEdge": percent(s["totalVolume"] - s["totalPayout"], s["totalVolume"]),
                }
                for token, s in ordered
            ],
            "lastUpdated": utcnow().isoformat(),
        }

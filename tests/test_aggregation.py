from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from freezegun import freeze_time

from domain.aggregation import AggregationService, timeframe_start
from domain.errors import ValidationError
from domain.models import SortField, Timeframe, UserAccount
from domain.validation import AVATARS
from infra.db import utcnow
from infra.settings import settings

from helpers import ALICE, BOB, CAROL, address


@pytest.fixture
def seed(place, settle):
    """Give ``user`` ``bets`` bets of which the first ``wins`` settle as winners"""
    async def _seed(user, bets, wins, amount="1", settle_rest=True, **kwargs):
        placed = [await place(user=user, amount=amount, **kwargs) for _ in range(bets)]
        for index, bet in enumerate(placed):
            if index < wins:
                await settle(bet, is_winner=True, payout=str(Decimal(amount) * 2))
            elif settle_rest:
                await settle(bet, is_winner=False)
        return placed
    return _seed


@pytest.fixture
def account_row(async_db):
    """Insert an account with the given counters directly"""
    async def _account_row(user, bets, wins=0, wagered="0", won="0"):
        async_db.add(UserAccount(
            address=user, total_bets=bets, total_wins=wins, total_settled=bets,
            total_wagered=Decimal(wagered), total_won=Decimal(won), bets_today=0,
            last_bet_time=utcnow(),
        ))
        await async_db.commit()
    return _account_row


class TestLeaderboard:
    async def test_floor_and_win_rate_order(self, aggregation, seed):
        await seed(CAROL, bets=5, wins=4)
        await seed(BOB, bets=10, wins=6)
        await seed(ALICE, bets=5, wins=3)
        await seed(address(9), bets=4, wins=4)

        board = await aggregation.leaderboard()

        addresses = [entry["address"] for entry in board["leaderboard"]]
        # equal win rates fall back to more bets first
        assert addresses == [CAROL, BOB, ALICE]
        assert [entry["rank"] for entry in board["leaderboard"]] == [1, 2, 3]
        assert board["pagination"] == {"page": 1, "limit": 50, "total": 3, "pages": 1}
        assert board["timeframe"] == "all"
        assert board["sortBy"] == "winRate"

    async def test_entry_fields(self, aggregation, seed):
        await seed(CAROL, bets=5, wins=4)

        entry = (await aggregation.leaderboard())["leaderboard"][0]
        assert entry["displayAddress"] == "0xcccc...cccc"
        assert entry["avatar"] in AVATARS
        assert entry["totalBets"] == 5
        assert entry["totalWins"] == 4
        assert entry["winRate"] == 80.0
        assert entry["totalWagered"] == "5.0000"
        assert entry["totalWon"] == "8.0000"
        assert entry["profit"] == "3.0000"
        assert entry["lastBetTime"] is not None

    async def test_total_bets_sort_excludes_floor(self, aggregation, seed):
        await seed(ALICE, bets=7, wins=3)
        await seed(BOB, bets=7, wins=4)
        await seed(CAROL, bets=4, wins=0)

        board = await aggregation.leaderboard(sort_by=SortField.TOTAL_BETS)

        assert {entry["address"] for entry in board["leaderboard"]} == {ALICE, BOB}
        assert all(entry["totalBets"] == 7 for entry in board["leaderboard"])

    async def test_profit_and_total_won_sort(self, aggregation, seed):
        await seed(ALICE, bets=5, wins=1, amount="10")
        await seed(BOB, bets=5, wins=5, amount="1")

        by_profit = await aggregation.leaderboard(sort_by=SortField.PROFIT)
        assert [e["address"] for e in by_profit["leaderboard"]] == [BOB, ALICE]

        by_won = await aggregation.leaderboard(sort_by=SortField.TOTAL_WON)
        assert [e["address"] for e in by_won["leaderboard"]] == [ALICE, BOB]

    async def test_pagination(self, aggregation, seed):
        await seed(CAROL, bets=5, wins=4)
        await seed(BOB, bets=10, wins=6)
        await seed(ALICE, bets=5, wins=3)

        page = await aggregation.leaderboard(page=2, limit=2)
        assert [e["address"] for e in page["leaderboard"]] == [ALICE]
        assert page["leaderboard"][0]["rank"] == 3
        assert page["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}

    async def test_timeframe_filters_on_last_bet(self, aggregation, seed):
        await seed(ALICE, bets=5, wins=1)
        await seed(BOB, bets=5, wins=5, start_time=utcnow() - timedelta(days=60))

        assert [e["address"] for e in (await aggregation.leaderboard(Timeframe.WEEK))["leaderboard"]] == [ALICE]
        assert len((await aggregation.leaderboard(Timeframe.ALL))["leaderboard"]) == 2

    async def test_equal_win_rates_tie_exactly(self, aggregation, seed):
        await seed(ALICE, bets=6, wins=2)
        await seed(BOB, bets=9, wins=3)
        await seed(CAROL, bets=6, wins=2)

        board = await aggregation.leaderboard()

        assert [e["address"] for e in board["leaderboard"]] == [BOB, ALICE, CAROL]
        assert (await aggregation.user_rank(BOB))["rank"] == 1
        assert (await aggregation.user_rank(ALICE))["rank"] == 2
        assert (await aggregation.user_rank(CAROL))["rank"] == 2

    async def test_amounts_sort_numerically(self, aggregation, account_row):
        await account_row(ALICE, bets=5, wagered="5", won="9.5")
        await account_row(BOB, bets=5, wagered="5", won="10")
        await account_row(CAROL, bets=5, wagered="5", won="100.25")

        by_won = await aggregation.leaderboard(sort_by=SortField.TOTAL_WON)
        assert [e["address"] for e in by_won["leaderboard"]] == [CAROL, BOB, ALICE]
        assert by_won["leaderboard"][0]["totalWon"] == "100.2500"

        by_profit = await aggregation.leaderboard(sort_by=SortField.PROFIT)
        assert [e["address"] for e in by_profit["leaderboard"]] == [CAROL, BOB, ALICE]
        assert (await aggregation.user_rank(ALICE, sort_by=SortField.PROFIT))["rank"] == 3

    async def test_deep_page_is_ordered_in_the_store(self, aggregation, account_row):
        for n in range(25):
            await account_row(address(n + 10), bets=5 + n)

        page = await aggregation.leaderboard(sort_by=SortField.TOTAL_BETS, page=2, limit=10)

        assert [e["totalBets"] for e in page["leaderboard"]] == list(range(19, 9, -1))
        assert [e["rank"] for e in page["leaderboard"]] == list(range(11, 21))
        assert page["pagination"] == {"page": 2, "limit": 10, "total": 25, "pages": 3}

        last = page["leaderboard"][-1]["address"]
        assert (await aggregation.user_rank(last, sort_by=SortField.TOTAL_BETS))["rank"] == 20

    async def test_invalid_pagination(self, aggregation):
        with pytest.raises(ValidationError):
            await aggregation.leaderboard(limit=0)

    async def test_empty(self, aggregation):
        board = await aggregation.leaderboard()
        assert board["leaderboard"] == []
        assert board["pagination"]["total"] == 0


class TestUserRank:
    async def test_rank_counts_strictly_better(self, aggregation, seed):
        await seed(CAROL, bets=5, wins=4)
        await seed(BOB, bets=10, wins=6)
        await seed(ALICE, bets=5, wins=3)

        assert (await aggregation.user_rank(CAROL))["rank"] == 1
        bob = await aggregation.user_rank(BOB)
        assert bob["rank"] == 2
        assert bob["user"]["address"] == BOB
        assert bob["user"]["winRate"] == 60.0
        assert (await aggregation.user_rank(ALICE))["rank"] == 3

    async def test_rank_matches_leaderboard_position(self, aggregation, seed):
        await seed(ALICE, bets=6, wins=2)
        await seed(BOB, bets=5, wins=5)
        await seed(CAROL, bets=8, wins=4)

        board = await aggregation.leaderboard(sort_by=SortField.PROFIT)
        for entry in board["leaderboard"]:
            rank = await aggregation.user_rank(entry["address"], sort_by=SortField.PROFIT)
            assert rank["rank"] == entry["rank"]

    async def test_below_floor_is_unranked(self, aggregation, seed):
        await seed(ALICE, bets=4, wins=4)

        result = await aggregation.user_rank(ALICE)
        assert result["rank"] is None
        assert "message" in result

    async def test_unknown_user_is_unranked(self, aggregation):
        assert (await aggregation.user_rank(BOB))["rank"] is None

    async def test_outside_timeframe_is_unranked(self, aggregation, seed):
        await seed(ALICE, bets=5, wins=5, start_time=utcnow() - timedelta(days=60))

        assert (await aggregation.user_rank(ALICE, Timeframe.MONTH))["rank"] is None
        assert (await aggregation.user_rank(ALICE, Timeframe.ALL))["rank"] == 1


class TestGlobalStats:
    async def test_totals(self, aggregation, place, settle):
        win = await place(user=ALICE, token="ETH", amount="10")
        loss = await place(user=BOB, token="BTC", amount="4")
        await place(user=BOB, token="ETH", amount="1")
        await settle(win, is_winner=True, payout="19.6")
        await settle(loss, is_winner=False)

        stats = await aggregation.global_stats()

        assert stats["totalBets"] == 3
        assert stats["totalUsers"] == 2
        assert stats["totalVolume"] == "15.0000"
        assert stats["totalPayout"] == "19.6000"
        assert stats["activeBets"] == 1
        assert stats["globalWinRate"] == 50.0
        assert [t["token"] for t in stats["tokenStats"]] == ["ETH", "BTC"]
        eth = stats["tokenStats"][0]
        assert eth["count"] == 2
        assert eth["volume"] == "11.0000"
        assert sum(a["count"] for a in stats["recentActivity"]) == 3
        assert stats["recentActivity"][0]["hour"].endswith(":00:00")

    async def test_old_bets_excluded_from_recent_activity(self, aggregation, place):
        await place(start_time=utcnow() - timedelta(days=2))
        await place()

        stats = await aggregation.global_stats()
        assert stats["totalBets"] == 2
        assert sum(a["count"] for a in stats["recentActivity"]) == 1

    async def test_empty(self, aggregation):
        stats = await aggregation.global_stats()
        assert stats["totalBets"] == 0
        assert stats["globalWinRate"] == 0.0
        assert stats["totalVolume"] == "0.0000"
        assert stats["tokenStats"] == []


class TestTokenStats:
    async def test_per_token_breakdown(self, aggregation, place, settle):
        win = await place(token="ETH", amount="10", direction="up")
        await place(token="ETH", amount="5", direction="down")
        loss = await place(token="LINK", amount="1", direction="down")
        await settle(win, is_winner=True, payout="19.6")
        await settle(loss, is_winner=False)

        tokens = (await aggregation.token_stats())["tokens"]

        assert [t["token"] for t in tokens] == ["ETH", "LINK"]
        eth = tokens[0]
        assert eth["totalBets"] == 2
        assert eth["activeBets"] == 1
        assert eth["settledBets"] == 1
        assert eth["wins"] == 1
        assert eth["upBets"] == 1
        assert eth["downBets"] == 1
        assert eth["winRate"] == 100.0
        assert eth["totalVolume"] == "15.0000"
        assert eth["houseEdge"] == -30.67

        link = tokens[1]
        assert link["winRate"] == 0.0
        assert link["houseEdge"] == 100.0


class TestUserStats:
    async def test_unknown_user(self, aggregation):
        stats = await aggregation.user_stats(ALICE)
        assert stats["exists"] is False

    async def test_breakdowns_and_streak(self, aggregation, place, settle):
        first = await place(token="ETH", amount="10", duration=300)
        second = await place(token="ETH", amount="10", duration=900)
        third = await place(token="BTC", amount="5", duration=300)
        await place(token="BTC", amount="5", duration=3600)

        await settle(first, is_winner=False)
        await settle(second, is_winner=True, payout="19.6")
        await settle(third, is_winner=True, payout="9.8")

        stats = await aggregation.user_stats(ALICE)

        assert stats["exists"] is True
        assert stats["basicStats"]["totalBets"] == 4
        assert stats["basicStats"]["totalWins"] == 2
        assert stats["basicStats"]["winRate"] == 50.0
        assert stats["basicStats"]["averageBetSize"] == "7.5000"

        tokens = {t["token"]: t for t in stats["tokenBreakdown"]}
        assert tokens["ETH"]["totalBets"] == 2
        assert tokens["ETH"]["wins"] == 1
        assert tokens["ETH"]["volume"] == "20.0000"
        assert tokens["ETH"]["profit"] == "-0.4000"
        assert tokens["BTC"]["profit"] == "-0.2000"

        durations = {d["duration"]: d for d in stats["durationBreakdown"]}
        assert durations[300]["totalBets"] == 2
        assert durations[300]["wins"] == 1
        assert durations[3600]["wins"] == 0

        assert stats["streak"] == {"type": "win", "length": 2}
        assert [r["isWinner"] for r in stats["recentPerformance"]] == [True, True, False]

    async def test_no_settlements_has_no_streak(self, aggregation, place):
        await place()
        stats = await aggregation.user_stats(ALICE)
        assert stats["streak"] == {"type": None, "length": 0}
        assert stats["recentPerformance"] == []


class TestHelpers:
    @freeze_time("2026-06-17 15:30:00")
    def test_timeframe_windows(self):
        now = datetime(2026, 6, 17, 15, 30, tzinfo=timezone.utc)
        assert timeframe_start(Timeframe.TODAY) == datetime(2026, 6, 17, tzinfo=timezone.utc)
        assert timeframe_start(Timeframe.WEEK) == now - timedelta(days=7)
        assert timeframe_start(Timeframe.MONTH) == datetime(2026, 6, 1, tzinfo=timezone.utc)
        assert timeframe_start(Timeframe.ALL) is None

    def test_min_bets_defaults_from_settings(self):
        assert AggregationService(None).min_bets == settings.leaderboard_min_bets

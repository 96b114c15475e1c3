"""
Read-through caching of aggregate views.

Keys are derived deterministically from query parameters and grouped into
families. Every family has its own TTL. Mutations invalidate whole families
by tag rather than tracking which cached pages a single bet affects; the
cache can be wiped at any time without affecting correctness.
"""

import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from domain.aggregation import AggregationService
from domain.errors import CacheUnavailable
from domain.models import BetStatus, SortField, Timeframe
from domain.services import BetLifecycleService
from domain.validation import normalize_address
from infra.monitoring import prometheus_metrics
from infra.settings import settings


logger = logging.getLogger(__name__)


class CacheFamily(Enum):
    BET_LIST = "user_bets"
    LEADERBOARD = "leaderboard"
    USER_RANK = "user_rank"
    GLOBAL_STATS = "stats_global"
    TOKEN_STATS = "stats_tokens"
    USER_STATS = "stats_user"


def default_ttls() -> Dict[CacheFamily, int]:
    return {
        CacheFamily.LEADERBOARD: settings.cache_ttl_short_sec,
        CacheFamily.USER_STATS: settings.cache_ttl_short_sec,
        CacheFamily.BET_LIST: settings.cache_ttl_medium_sec,
        CacheFamily.USER_RANK: settings.cache_ttl_medium_sec,
        CacheFamily.GLOBAL_STATS: settings.cache_ttl_medium_sec,
        CacheFamily.TOKEN_STATS: settings.cache_ttl_long_sec,
    }


class CacheKeys:
    """Key builders and tags for each family"""

    LEADERBOARD_TAG = "leaderboard"
    RANK_TAG = "rank"
    STATS_TAG = "stats"

    @staticmethod
    def user_tag(address: str) -> str:
        return f"user:{address}"

    @staticmethod
    def user_bets(address: str, page: int, limit: int, status: Optional[BetStatus]) -> str:
        return f"user_bets:{address}:{page}:{limit}:{status.value if status else 'all'}"

    @staticmethod
    def leaderboard(timeframe: Timeframe, sort_by: SortField, page: int, limit: int) -> str:
        return f"leaderboard:{timeframe.value}:{sort_by.value}:{page}:{limit}"

    @staticmethod
    def user_rank(address: str, timeframe: Timeframe, sort_by: SortField) -> str:
        return f"user_rank:{address}:{timeframe.value}:{sort_by.value}"

    @staticmethod
    def global_stats() -> str:
        return "stats:global"

    @staticmethod
    def token_stats() -> str:
        return "stats:tokens"

    @staticmethod
    def user_stats(address: str) -> str:
        return f"stats:user:{address}"

    @classmethod
    def bettor_tags(cls, address: str) -> List[str]:
        """Everything a mutation by ``address`` may have made stale"""
        return [cls.user_tag(address), cls.LEADERBOARD_TAG, cls.RANK_TAG, cls.STATS_TAG]

    @staticmethod
    def patterns() -> List[str]:
        return ["user_bets:*", "leaderboard:*", "user_rank:*", "stats:*", "cache_tag:*"]


class ReadThroughCache:
    """
    Cache coordinator: serve from cache, else compute, store and return.

    The tag generations are read before computing and the result is only
    stored if none of them moved, so a read that overlaps an invalidation
    never re-caches what the invalidation removed. Backend failures are
    logged and bypassed; they never fail a request.
    """

    def __init__(self, store, ttls: Optional[Dict[CacheFamily, int]] = None):
        self.store = store
        self.ttls = ttls or default_ttls()

    async def get_or_compute(
        self,
        key: str,
        family: CacheFamily,
        compute: Callable[[], Awaitable[Any]],
        tags: Iterable[str] = (),
    ) -> Any:
        cached = await self._read(key, family)
        if cached is not None:
            prometheus_metrics.cache_requests_total.labels(family=family.value, result="hit").inc()
            return cached

        prometheus_metrics.cache_requests_total.labels(family=family.value, result="miss").inc()
        tags = list(tags)
        generations = await self._generations(key, tags)
        result = await compute()
        if generations is not None:
            await self._write(key, family, result, tags, generations)
        return result

    async def _read(self, key: str, family: CacheFamily) -> Optional[Any]:
        try:
            raw = await self.store.get(key)
        except CacheUnavailable as e:
            prometheus_metrics.cache_errors_total.labels(operation="get").inc()
            logger.warning(f"Cache read failed for {key}, computing directly: {e.original_error}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def _generations(self, key: str, tags: List[str]) -> Optional[List[int]]:
        try:
            return await self.store.generations(tags)
        except CacheUnavailable as e:
            prometheus_metrics.cache_errors_total.labels(operation="generations").inc()
            logger.warning(f"Cache generations unavailable for {key}, not storing: {e.original_error}")
            return None

    async def _write(
        self, key: str, family: CacheFamily, value: Any, tags: List[str], generations: List[int]
    ) -> None:
        try:
            stored = await self.store.set(
                key, json.dumps(value), self.ttls[family], tags, generations=generations
            )
        except CacheUnavailable as e:
            prometheus_metrics.cache_errors_total.labels(operation="set").inc()
            logger.warning(f"Cache write failed for {key}: {e.original_error}")
            return
        if not stored:
            logger.debug(f"Skipped caching {key}: invalidated while computing")

    async def invalidate_bettor(self, address: str) -> None:
        """Drop the bettor's keys plus the leaderboard, rank and stats families"""
        try:
            removed = await self.store.invalidate_tags(CacheKeys.bettor_tags(address))
            logger.debug(f"Invalidated {removed} cache entries for {address}")
        except CacheUnavailable as e:
            prometheus_metrics.cache_errors_total.labels(operation="invalidate").inc()
            logger.warning(f"Cache invalidation failed for {address}, entries expire by TTL: {e.original_error}")

    async def clear(self) -> int:
        """Remove every cached entry and tag set; generation counters are kept"""
        removed = 0
        for pattern in CacheKeys.patterns():
            removed += await self.store.delete_pattern(pattern)
        return removed


class CachedReadService:
    """Read-side entry point composing the cache with the aggregation engine"""

    def __init__(self, db: AsyncSession, cache: ReadThroughCache):
        self.db = db
        self.cache = cache
        self.aggregation = AggregationService(db)
        self.bets = BetLifecycleService(db, cache)

    async def get_user_bets(
        self, address: str, page: int = 1, limit: int = 20, status: Optional[BetStatus] = None
    ) -> Dict[str, Any]:
        address = normalize_address(address, "address")
        key = CacheKeys.user_bets(address, page, limit, status)
        return await self.cache.get_or_compute(
            key,
            CacheFamily.BET_LIST,
            lambda: self.bets.list_user_bets(address, page, limit, status),
            tags=[CacheKeys.user_tag(address)],
        )

    async def get_leaderboard(
        self,
        timeframe: Timeframe = Timeframe.ALL,
        sort_by: SortField = SortField.WIN_RATE,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        key = CacheKeys.leaderboard(timeframe, sort_by, page, limit)
        return await self.cache.get_or_compute(
            key,
            CacheFamily.LEADERBOARD,
            lambda: self.aggregation.leaderboard(timeframe, sort_by, page, limit),
            tags=[CacheKeys.LEADERBOARD_TAG],
        )

    async def get_user_rank(
        self,
        address: str,
        timeframe: Timeframe = Timeframe.ALL,
        sort_by: SortField = SortField.WIN_RATE,
    ) -> Dict[str, Any]:
        address = normalize_address(address, "address")
        key = CacheKeys.user_rank(address, timeframe, sort_by)
        return await self.cache.get_or_compute(
            key,
            CacheFamily.USER_RANK,
            lambda: self.aggregation.user_rank(address, timeframe, sort_by),
            tags=[CacheKeys.RANK_TAG, CacheKeys.user_tag(address)],
        )

    async def get_global_stats(self) -> Dict[str, Any]:
        return await self.cache.get_or_compute(
            CacheKeys.global_stats(),
            CacheFamily.GLOBAL_STATS,
            self.aggregation.global_stats,
            tags=[CacheKeys.STATS_TAG],
        )

    async def get_token_stats(self) -> Dict[str, Any]:
        return await self.cache.get_or_compute(
            CacheKeys.token_stats(),
            CacheFamily.TOKEN_STATS,
            self.aggregation.token_stats,
            tags=[CacheKeys.STATS_TAG],
        )

    async def get_user_stats(self, address: str) -> Dict[str, Any]:
        address = normalize_address(address, "address")
        return await self.cache.get_or_compute(
            CacheKeys.user_stats(address),
            CacheFamily.USER_STATS,
            lambda: self.aggregation.user_stats(address),
            tags=[CacheKeys.STATS_TAG, CacheKeys.user_tag(address)],
        )

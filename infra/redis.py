import functools
from typing import Iterable, List, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from domain.errors import CacheUnavailable
from .settings import settings

redis_client = redis.from_url(settings.redis_url, decode_responses=True)

TAG_PREFIX = "cache_tag:"
GENERATION_PREFIX = "cache_gen:"


def _cache_errors(func):
    """Surface every backend failure as CacheUnavailable"""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (RedisError, OSError) as e:
            raise CacheUnavailable(f"Cache backend error in {func.__name__}", original_error=e)
    return wrapper


class RedisCacheStore:
    """
    Key/value store with per-entry TTL and tag sets for bulk invalidation.

    Each cached key is added to one Redis set per tag; invalidating a tag
    bumps the tag's generation counter, then deletes every member key and
    the set itself. Writers that read the generations before computing can
    pass them to ``set`` so a value computed before an invalidation is
    never stored after it.
    """

    def __init__(self, client: redis.Redis = redis_client, tag_ttl: Optional[int] = None):
        self.client = client
        self.tag_ttl = tag_ttl or settings.cache_ttl_long_sec

    @staticmethod
    def tag_key(tag: str) -> str:
        return f"{TAG_PREFIX}{tag}"

    @staticmethod
    def generation_key(tag: str) -> str:
        return f"{GENERATION_PREFIX}{tag}"

    @_cache_errors
    async def get(self, key: str) -> Optional[str]:
        """Get raw value from Redis"""
        return await self.client.get(key)

    @_cache_errors
    async def set(
        self,
        key: str,
        value: str,
        ttl: int,
        tags: Sequence[str] = (),
        generations: Optional[Sequence[int]] = None,
    ) -> bool:
        """
        Set value with TTL and register it under its tags.

        With ``generations`` (as read by ``generations()`` before the value
        was computed) the write only happens if none of ``tags`` has been
        invalidated since; returns whether the value was stored.
        """
        tags = list(tags)
        if generations is None:
            async with self.client.pipeline(transaction=False) as pipe:
                self._queue_set(pipe, key, value, ttl, tags)
                await pipe.execute()
            return True

        generation_keys = [self.generation_key(tag) for tag in tags]
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                if generation_keys:
                    await pipe.watch(*generation_keys)
                    current = [int(v or 0) for v in await pipe.mget(generation_keys)]
                    if current != list(generations):
                        return False
                    pipe.multi()
                self._queue_set(pipe, key, value, ttl, tags)
                await pipe.execute()
            except WatchError:
                return False
        return True

    @_cache_errors
    async def generations(self, tags: Sequence[str]) -> List[int]:
        """Current invalidation generation of each tag (0 if never invalidated)"""
        if not tags:
            return []
        values = await self.client.mget([self.generation_key(tag) for tag in tags])
        return [int(value or 0) for value in values]

    def _queue_set(self, pipe, key: str, value: str, ttl: int, tags: Iterable[str]) -> None:
        pipe.set(key, value, ex=ttl)
        for tag in tags:
            tag_key = self.tag_key(tag)
            pipe.sadd(tag_key, key)
            pipe.expire(tag_key, max(ttl, self.tag_ttl))

    @_cache_errors
    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Delete every key registered under any of ``tags``"""
        removed = 0
        for tag in tags:
            # bump first so a write racing this invalidation sees the new generation
            await self.client.incr(self.generation_key(tag))
            tag_key = self.tag_key(tag)
            members: List[str] = list(await self.client.smembers(tag_key))
            if members:
                removed += await self.client.delete(*members)
            await self.client.delete(tag_key)
        return removed

    @_cache_errors
    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern using SCAN"""
        removed = 0
        batch: List[str] = []
        async for key in self.client.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await self.client.delete(*batch)
                batch = []
        if batch:
            removed += await self.client.delete(*batch)
        return removed

    async def close(self) -> None:
        """Close Redis connection"""
        await self.client.aclose()


cache_store = RedisCacheStore()

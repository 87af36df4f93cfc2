"""Per-user hidden-id cache.

One entry per user holds the hidden ids of every entity type. Any mutation
for a user invalidates that user's whole entry. Both backends follow the same
rule for races: a load that overlapped an invalidate is returned to its caller
but never stored, so the next read refetches.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable

import redis.asyncio as redis

from peek_catalog.config import get_settings
from peek_catalog.db.schemas import HiddenEntityIds

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[HiddenEntityIds]]


class MemoryHiddenIdCache:
    """In-process cache guarded by an asyncio.Lock."""

    def __init__(self):
        self._entries: dict[int, HiddenEntityIds] = {}
        self._generations: dict[int, int] = {}
        self._epoch = 0
        self._lock = asyncio.Lock()

    def _stamp(self, user_id: int) -> tuple[int, int]:
        return self._epoch, self._generations.get(user_id, 0)

    async def get(self, user_id: int) -> HiddenEntityIds | None:
        async with self._lock:
            return self._entries.get(user_id)

    async def get_or_load(self, user_id: int, loader: Loader) -> HiddenEntityIds:
        async with self._lock:
            cached = self._entries.get(user_id)
            if cached is not None:
                return cached
            stamp = self._stamp(user_id)

        # Load outside the lock so one slow user does not block the others
        value = await loader()

        async with self._lock:
            if self._stamp(user_id) == stamp:
                self._entries[user_id] = value
            else:
                logger.debug(f"Hidden-id cache load for user {user_id} raced an invalidate, not stored")
        return value

    async def invalidate(self, user_id: int) -> None:
        async with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._epoch += 1

    async def close(self) -> None:
        return None


class RedisHiddenIdCache:
    """Redis-backed cache for deployments running several API processes.

    Each payload records the global epoch and the user's generation at load
    time. invalidate() bumps the generation and clear() bumps the epoch, so a
    payload written by a load that overlapped either is ignored on read.
    Redis errors are logged and treated as misses.
    """

    EPOCH_KEY = "hidden:epoch"

    def __init__(self, redis_url: str | None = None, ttl: int | None = None, client=None):
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._ttl = ttl if ttl is not None else settings.hidden_cache_ttl_seconds
        self._redis: redis.Redis | None = client

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    @staticmethod
    def data_key(user_id: int) -> str:
        return f"hidden:ids:{user_id}"

    @staticmethod
    def generation_key(user_id: int) -> str:
        return f"hidden:gen:{user_id}"

    async def _read(self, user_id: int) -> tuple[HiddenEntityIds | None, tuple[int, int]]:
        client = await self._get_redis()
        raw, generation, epoch = await client.mget(
            self.data_key(user_id), self.generation_key(user_id), self.EPOCH_KEY
        )
        stamp = (int(epoch or 0), int(generation or 0))
        if not raw:
            return None, stamp
        payload = json.loads(raw)
        if (payload.get("epoch", 0), payload.get("generation")) != stamp:
            return None, stamp
        return HiddenEntityIds.model_validate(payload["ids"]), stamp

    async def get(self, user_id: int) -> HiddenEntityIds | None:
        try:
            value, _ = await self._read(user_id)
            return value
        except Exception as e:
            logger.warning(f"Hidden-id cache get error for user {user_id}: {e}")
            return None

    async def get_or_load(self, user_id: int, loader: Loader) -> HiddenEntityIds:
        stamp = None
        try:
            cached, stamp = await self._read(user_id)
            if cached is not None:
                return cached
        except Exception as e:
            logger.warning(f"Hidden-id cache get error for user {user_id}: {e}")

        value = await loader()

        if stamp is None:
            return value
        epoch, generation = stamp
        try:
            client = await self._get_redis()
            payload = json.dumps({
                "epoch": epoch,
                "generation": generation,
                "ids": value.model_dump(mode="json"),
            })
            if self._ttl:
                await client.setex(self.data_key(user_id), self._ttl, payload)
            else:
                await client.set(self.data_key(user_id), payload)
        except Exception as e:
            logger.warning(f"Hidden-id cache set error for user {user_id}: {e}")
        return value

    async def invalidate(self, user_id: int) -> None:
        try:
            client = await self._get_redis()
            await client.incr(self.generation_key(user_id))
            await client.delete(self.data_key(user_id))
        except Exception as e:
            logger.warning(f"Hidden-id cache invalidate error for user {user_id}: {e}")

    async def clear(self) -> None:
        try:
            client = await self._get_redis()
            # Bump first so loads already in flight cannot repopulate
            await client.incr(self.EPOCH_KEY)
            deleted = 0
            async for key in client.scan_iter(match="hidden:ids:*", count=500):
                await client.delete(key)
                deleted += 1
            logger.info(f"Cleared {deleted} hidden-id cache entries")
        except Exception as e:
            logger.warning(f"Hidden-id cache clear error: {e}")

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()


HiddenIdCache = MemoryHiddenIdCache | RedisHiddenIdCache

_cache: HiddenIdCache | None = None


def get_hidden_id_cache() -> HiddenIdCache:
    """Get the process-wide hidden-id cache for the configured backend."""
    global _cache
    if _cache is None:
        if get_settings().hidden_cache_backend == "redis":
            _cache = RedisHiddenIdCache()
        else:
            _cache = MemoryHiddenIdCache()
    return _cache


def reset_hidden_id_cache() -> None:
    """Drop the singleton (tests)."""
    global _cache
    _cache = None

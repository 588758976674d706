import json
import logging
import time
from typing import Any, Optional

from cachetools import TTLCache
from redis.asyncio import Redis

log = logging.getLogger("cache")


class KeyValueCache:
    """Shared key/value store for counters and staged state.

    Uses Redis when a URL is configured; otherwise (or after the first Redis
    error) a per-process TTLCache. Values are JSON-serialisable.
    """

    def __init__(self, redis_url: str | None = None, max_ttl_seconds: int = 7 * 24 * 3600):
        self._max_ttl = max(1, int(max_ttl_seconds))
        # local entries are (expires_at, value) so each key keeps its own TTL
        self._local: TTLCache = TTLCache(maxsize=4096, ttl=self._max_ttl)
        self._redis: Optional[Redis] = None
        if redis_url:
            # decode_responses=True gives us str payloads
            self._redis = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def _disable_redis(self, op: str, err: Exception) -> None:
        log.warning("cache.redis disabled op=%s err=%s; using local cache", op, type(err).__name__)
        self._redis = None

    def _ttl(self, ttl_seconds: Optional[int]) -> int:
        return max(1, min(int(ttl_seconds or self._max_ttl), self._max_ttl))

    def _local_get(self, key: str) -> Any:
        entry = self._local.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= time.time():
            self._local.pop(key, None)
            return None
        return value

    def _local_set(self, key: str, value: Any, ttl: int) -> None:
        self._local[key] = (time.time() + ttl, value)

    async def aget(self, key: str) -> Any:
        if self._redis is not None:
            try:
                val = await self._redis.get(key)
            except Exception as e:
                self._disable_redis("get", e)
            else:
                if not val:
                    return None
                try:
                    return json.loads(val)
                except ValueError:
                    return None
        return self._local_get(key)

    async def aset(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._ttl(ttl_seconds)
        if self._redis is not None:
            try:
                await self._redis.set(key, json.dumps(value), ex=ttl)
                return
            except Exception as e:
                self._disable_redis("set", e)
        self._local_set(key, value, ttl)

    async def adelete(self, key: str) -> None:
        if self._redis is not None:
            try:
                await self._redis.delete(key)
                return
            except Exception as e:
                self._disable_redis("delete", e)
        self._local.pop(key, None)

    async def apop(self, key: str) -> Any:
        """Read and delete in one step, so a staged value is consumed at most once."""
        if self._redis is not None:
            try:
                val = await self._redis.getdel(key)
            except Exception as e:
                self._disable_redis("getdel", e)
            else:
                if not val:
                    return None
                try:
                    return json.loads(val)
                except ValueError:
                    return None
        value = self._local_get(key)
        self._local.pop(key, None)
        return value

    async def aincr(self, key: str, ttl_seconds: Optional[int] = None, amount: int = 1) -> int:
        ttl = self._ttl(ttl_seconds)
        if self._redis is not None:
            try:
                val = await self._redis.incrby(key, amount)
                if val == amount:
                    await self._redis.expire(key, ttl)
                return int(val)
            except Exception as e:
                self._disable_redis("incr", e)
        entry = self._local.get(key)
        now = time.time()
        if entry is None or entry[0] <= now:
            count, expires_at = 0, now + ttl
        else:
            expires_at, count = entry
        count = int(count) + amount
        self._local[key] = (expires_at, count)
        return count

    async def aclose(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                log.debug("cache.redis close failed err=%s", type(e).__name__)

import time
from typing import Optional

from fastapi import HTTPException, Request, status

from enhancer.services.cache import KeyValueCache


def _minute_bucket(ts: Optional[float] = None) -> int:
    return int((ts or time.time()) // 60)


def client_ip(request: Request) -> Optional[str]:
    fwd = request.headers.get("x-forwarded-for")
    return (fwd.split(",")[0].strip() if fwd else None) or (
        request.client.host if request.client else None
    )


class RateLimiter:
    """Fixed one-minute buckets per user and per IP, counted in the shared cache."""

    def __init__(self, cache: KeyValueCache, user_per_min: int = 20, ip_per_min: int = 60):
        self.cache = cache
        self.user_per_min = max(1, user_per_min)
        self.ip_per_min = max(1, ip_per_min)

    async def _allow(self, kind: str, ident: Optional[str], limit: int) -> bool:
        if not ident:
            return True
        key = f"enh:rl:{kind}:{ident}:{_minute_bucket()}"
        return await self.cache.aincr(key, ttl_seconds=120) <= limit

    async def allow_user(self, user_id: Optional[str]) -> bool:
        # No user id: defer to the IP limiter only
        return await self._allow("user", user_id, self.user_per_min)

    async def allow_ip(self, ip: Optional[str]) -> bool:
        return await self._allow("ip", ip, self.ip_per_min)


async def enforce_limits(limiter: RateLimiter, request: Request, user_id: Optional[str]) -> None:
    """Raise 429 when the caller's IP or user bucket is exhausted."""
    if not await limiter.allow_ip(client_ip(request)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"reason": "rate_limited_ip", "retry": 60},
        )
    if not await limiter.allow_user(user_id):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"reason": "rate_limited_user", "retry": 60},
        )

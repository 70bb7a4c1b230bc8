from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Response

from authera.logging import get_logger
from authera.storage.errors import CacheUnavailable
from authera.storage.memory import MemoryCache

logger = get_logger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests. Please try again after 10 minutes."

GENERIC_PREFIX = "rl"
TWO_FACTOR_PREFIX = "2fa_fail"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    def apply_headers(self, response: Response) -> None:
        """Apply X-RateLimit-* headers (draft-polli-ratelimit-headers)."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.retry_after)


class RateLimiter:
    """Fixed-window attempt counter keyed by an arbitrary string (usually client IP).

    Up to ``points`` attempts are allowed per window of ``duration_seconds``;
    the window opens on the first attempt and is not extended by later ones.
    """

    def __init__(self, cache, *, prefix: str, points: int, duration_seconds: int) -> None:
        if points < 1 or duration_seconds < 1:
            raise ValueError("rate limiter needs at least one point and a positive window")
        self.cache = cache
        self.prefix = prefix
        self.points = points
        self.duration_seconds = duration_seconds
        self._fallback: Optional[MemoryCache] = None

    def _fallback_cache(self) -> MemoryCache:
        if self._fallback is None:
            self._fallback = MemoryCache()
        return self._fallback

    async def consume(self, key: str) -> RateLimitDecision:
        try:
            count, ttl = await self.cache.incr_window(self.prefix, key, self.duration_seconds)
        except CacheUnavailable as exc:
            # Keep limiting per process while the shared cache is down
            logger.warning("rate_limit_cache_unavailable", prefix=self.prefix, error=str(exc))
            count, ttl = await self._fallback_cache().incr_window(
                self.prefix, key, self.duration_seconds
            )
        allowed = count <= self.points
        if not allowed:
            logger.info("rate_limit_exceeded", prefix=self.prefix, key=key, count=count)
        return RateLimitDecision(
            allowed=allowed,
            limit=self.points,
            remaining=self.points - count,
            retry_after=ttl,
        )

    async def reset(self, key: str) -> None:
        try:
            await self.cache.reset_counter(self.prefix, key)
        except CacheUnavailable as exc:
            logger.warning("rate_limit_reset_failed", prefix=self.prefix, error=str(exc))
        if self._fallback is not None:
            await self._fallback.reset_counter(self.prefix, key)

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authera.storage.common import (
    dump_payload,
    load_payload,
    rate_key,
    session_key,
    token_used_key,
    user_session_key,
)
from authera.storage.errors import CacheUnavailable


class RedisCache:
    """Thin Redis wrapper for sessions, the user-session index, counters and token claims."""

    # Fixed window: the first hit in a window starts the expiry clock
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    # Only drop the index entry if it still points at the session being destroyed
    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._compare_and_delete = self.client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            raise CacheUnavailable(f"redis {operation} failed: {exc}") from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.client.ping())

    async def set_session(
        self, session_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        async with self._guard("set_session"):
            await self.client.set(
                session_key(session_id), dump_payload(payload), ex=max(1, ttl_seconds)
            )

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with self._guard("get_session"):
            raw = await self.client.get(session_key(session_id))
        return load_payload(raw)

    async def delete_session(self, session_id: str) -> bool:
        async with self._guard("delete_session"):
            return bool(await self.client.delete(session_key(session_id)))

    async def swap_user_session(
        self, email: str, session_id: str, ttl_seconds: int
    ) -> Optional[str]:
        """Point the user's index at ``session_id`` and return the id it replaced.

        ``SET ... GET`` makes the swap atomic, so of two concurrent logins for
        the same email each sees the other's id at most once.
        """
        async with self._guard("swap_user_session"):
            return await self.client.set(
                user_session_key(email), session_id, ex=max(1, ttl_seconds), get=True
            )

    async def get_user_session(self, email: str) -> Optional[str]:
        async with self._guard("get_user_session"):
            return await self.client.get(user_session_key(email))

    async def clear_user_session(self, email: str, session_id: str) -> bool:
        async with self._guard("clear_user_session"):
            removed = await self._compare_and_delete(
                keys=[user_session_key(email)], args=[session_id]
            )
        return bool(int(removed))

    async def incr_window(
        self, prefix: str, key: str, window_seconds: int
    ) -> Tuple[int, int]:
        """Count one hit in the fixed window and return ``(count, seconds_left)``."""
        async with self._guard("incr_window"):
            count, ttl = await self._fixed_window(
                keys=[rate_key(prefix, key)], args=[int(window_seconds)]
            )
        return int(count), int(ttl)

    async def reset_counter(self, prefix: str, key: str) -> None:
        async with self._guard("reset_counter"):
            await self.client.delete(rate_key(prefix, key))

    async def claim_token(self, jti: str, ttl_seconds: int) -> bool:
        """Record ``jti`` as used. Returns False if it was already claimed."""
        async with self._guard("claim_token"):
            acquired = await self.client.set(
                token_used_key(jti), "1", ex=max(1, ttl_seconds), nx=True
            )
        return bool(acquired)

    async def is_token_claimed(self, jti: str) -> bool:
        async with self._guard("is_token_claimed"):
            return bool(await self.client.exists(token_used_key(jti)))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

from __future__ import annotations

import copy
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from authera.logging import get_logger
from authera.storage.common import (
    SecretCipher,
    rate_key,
    session_key,
    token_used_key,
    user_session_key,
)
from authera.storage.errors import ConstraintViolation
from authera.storage.models import User


class MemoryStore:
    """In-process user store used for tests and single-node development."""

    def __init__(self, *, totp_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can nest acquisitions
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(totp_encryption_key)

    def create_user(self, name: str, email: str, totp_secret: str) -> User:
        with self._data_lock:
            if email in self.users:
                raise ConstraintViolation("User already exists", {"field": "email"})
            user = User.new(name=name, email=email, totp_secret=totp_secret)
            self.users[email] = replace(
                user, totp_secret=self._cipher.encrypt(totp_secret)
            )
        self.logger.info("user_created", user_id=user.id, email=email)
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            stored = self.users.get(email)
        if stored is None:
            return None
        return replace(stored, totp_secret=self._cipher.decrypt(stored.totp_secret))

    def user_exists(self, email: str) -> bool:
        with self._data_lock:
            return email in self.users

    def close(self) -> None:
        return None


class MemoryCache:
    """Dict-backed stand-in for :class:`RedisCache` with the same async surface.

    Expiry is evaluated lazily against ``clock`` so tests can move time forward
    without sleeping. Expired keys are dropped when read and, every
    ``sweep_every`` writes, all at once.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        sweep_every: int = 1000,
    ) -> None:
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[Any, float]] = {}
        self._sweep_every = max(1, sweep_every)
        self._writes_since_sweep = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def _live(self, key: str) -> Optional[Any]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _put(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._values[key] = (value, self._clock() + max(1, ttl_seconds))
        self._writes_since_sweep += 1
        if self._writes_since_sweep >= self._sweep_every:
            self._sweep()

    def _sweep(self) -> None:
        """Drop every expired entry. Caller holds ``_lock``."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._values.items() if expires_at <= now]
        for key in expired:
            del self._values[key]
        self._writes_since_sweep = 0

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def set_session(
        self, session_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        with self._lock:
            self._put(session_key(session_id), copy.deepcopy(payload), ttl_seconds)

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._live(session_key(session_id))
        return copy.deepcopy(value) if value is not None else None

    async def delete_session(self, session_id: str) -> bool:
        with self._lock:
            present = self._live(session_key(session_id)) is not None
            self._values.pop(session_key(session_id), None)
        return present

    async def swap_user_session(
        self, email: str, session_id: str, ttl_seconds: int
    ) -> Optional[str]:
        key = user_session_key(email)
        with self._lock:
            previous = self._live(key)
            self._put(key, session_id, ttl_seconds)
        return previous

    async def get_user_session(self, email: str) -> Optional[str]:
        with self._lock:
            return self._live(user_session_key(email))

    async def clear_user_session(self, email: str, session_id: str) -> bool:
        key = user_session_key(email)
        with self._lock:
            if self._live(key) != session_id:
                return False
            del self._values[key]
        return True

    async def incr_window(
        self, prefix: str, key: str, window_seconds: int
    ) -> Tuple[int, int]:
        full_key = rate_key(prefix, key)
        with self._lock:
            count = self._live(full_key)
            if count is None:
                self._put(full_key, 1, window_seconds)
                return 1, int(window_seconds)
            _, expires_at = self._values[full_key]
            self._values[full_key] = (count + 1, expires_at)
            remaining = max(1, int(round(expires_at - self._clock())))
            return count + 1, remaining

    async def reset_counter(self, prefix: str, key: str) -> None:
        with self._lock:
            self._values.pop(rate_key(prefix, key), None)

    async def claim_token(self, jti: str, ttl_seconds: int) -> bool:
        key = token_used_key(jti)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, "1", ttl_seconds)
        return True

    async def is_token_claimed(self, jti: str) -> bool:
        with self._lock:
            return self._live(token_used_key(jti)) is not None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from authera.logging import get_logger
from authera.storage.errors import CacheUnavailable
from authera.storage.models import Session


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Server-side sessions with at most one live session per email.

    Sessions live in the cache under ``session:{id}`` and the current id for a
    user under ``user_session:{email}``; both expire ``ttl_seconds`` after the
    login that created them. Store failures surface as
    :class:`~authera.storage.errors.CacheUnavailable`.
    """

    def __init__(
        self,
        cache,
        *,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock or _utcnow
        self.logger = get_logger(__name__)

    async def create(self, email: str, previous_session_id: Optional[str] = None) -> Session:
        """Start a fresh session for ``email``.

        The id the client presented (if any) is destroyed rather than promoted,
        and whatever session the user held before is evicted.
        """
        if previous_session_id:
            await self.destroy(previous_session_id)

        session = Session.new(email, self.ttl_seconds, now=self._clock())
        await self.cache.set_session(session.id, session.to_payload(), self.ttl_seconds)
        try:
            replaced = await self.cache.swap_user_session(email, session.id, self.ttl_seconds)
        except CacheUnavailable:
            await self._discard(session.id)
            raise

        if replaced and replaced != session.id:
            await self.cache.delete_session(replaced)
            self.logger.info("session_evicted", email=email, session_id=replaced)
        self.logger.info("session_created", email=email, session_id=session.id)
        return session

    async def _discard(self, session_id: str) -> None:
        try:
            await self.cache.delete_session(session_id)
        except CacheUnavailable as exc:
            self.logger.warning("session_discard_failed", session_id=session_id, error=str(exc))

    async def resolve(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        payload = await self.cache.get_session(session_id)
        if not payload:
            return None
        try:
            session = Session.from_payload(session_id, payload)
        except (KeyError, TypeError, ValueError):
            self.logger.warning("session_payload_invalid", session_id=session_id)
            return None
        if session.expires_at <= self._clock():
            return None
        # A session the index no longer points at has been superseded
        current = await self.cache.get_user_session(session.email)
        if current != session_id:
            return None
        return session

    async def destroy(self, session_id: Optional[str]) -> bool:
        """Delete ``session_id`` and its index entry. Returns False if it did not exist."""
        if not session_id:
            return False
        payload = await self.cache.get_session(session_id)
        existed = await self.cache.delete_session(session_id)
        email = (payload or {}).get("user", {}).get("email")
        if email:
            await self.cache.clear_user_session(email, session_id)
        if existed:
            self.logger.info("session_destroyed", session_id=session_id)
        return existed

"""Process-wide wiring of stores, cache and services.

``get_runtime()`` builds everything on first use. Redis is mandatory unless
``TEST_MODE`` or ``ALLOW_REDIS_FALLBACK_DEV`` is set, in which case sessions,
counters and token claims live in process memory.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from redis.exceptions import RedisError

from authera.config import Settings, get_settings, reset_settings_cache
from authera.logging import get_logger
from authera.service.auth import AuthService
from authera.service.email import EmailService
from authera.service.rate_limit import GENERIC_PREFIX, TWO_FACTOR_PREFIX, RateLimiter
from authera.service.sessions import SessionManager
from authera.service.tokens import TokenService
from authera.service.totp import TOTPService
from authera.storage.memory import MemoryCache, MemoryStore
from authera.storage.postgres import PostgresStore
from authera.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, MemoryCache]
Store = Union[MemoryStore, PostgresStore]


def _redact_dsn(url: Optional[str]) -> Optional[str]:
    """``redis://:pw@host:6379/0`` -> ``redis://:***@host:6379/0``."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if parts.password is None:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return urlunsplit(parts._replace(netloc=f"{parts.username or ''}:***@{host}"))
    except ValueError:
        return "<unparseable url>"


def _build_store(settings: Settings) -> Store:
    key = settings.totp_encryption_key or settings.jwt_secret
    if settings.use_memory_store:
        logger.info("user_store_selected", backend="memory")
        return MemoryStore(totp_encryption_key=key)
    logger.info("user_store_selected", backend="postgres")
    return PostgresStore(settings.database_url, totp_encryption_key=key)


def _build_cache(settings: Settings) -> Cache:
    failure: Optional[Exception] = None
    if settings.redis_url:
        cache = RedisCache(settings.redis_url, socket_timeout=settings.redis_timeout_seconds)
        try:
            cache.verify_connection()
            logger.info("cache_selected", backend="redis", url=_redact_dsn(settings.redis_url))
            return cache
        except (RedisError, OSError) as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is unreachable and in-memory fallback is disabled "
            "(set TEST_MODE or ALLOW_REDIS_FALLBACK_DEV for local runs)"
        ) from failure
    logger.warning(
        "cache_fallback_to_memory",
        url=_redact_dsn(settings.redis_url),
        reason=str(failure) if failure else "REDIS_URL not set",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return MemoryCache()


class Runtime:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.store = _build_store(self.settings)
        self.cache = _build_cache(self.settings)

        self.tokens = TokenService(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_seconds=self.settings.token_ttl_seconds,
        )
        self.totp = TOTPService(self.settings.totp_issuer)
        self.sessions = SessionManager(self.cache, ttl_seconds=self.settings.session_ttl_seconds)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.generic_limiter = RateLimiter(
            self.cache,
            prefix=GENERIC_PREFIX,
            points=self.settings.rate_limit_points,
            duration_seconds=self.settings.rate_limit_duration_seconds,
        )
        self.two_factor_limiter = RateLimiter(
            self.cache,
            prefix=TWO_FACTOR_PREFIX,
            points=self.settings.two_factor_limit_points,
            duration_seconds=self.settings.two_factor_limit_duration_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            totp=self.totp,
            sessions=self.sessions,
            email=self.email,
            two_factor_limiter=self.two_factor_limiter,
        )
        logger.info(
            "runtime_ready",
            cache=type(self.cache).__name__,
            store=type(self.store).__name__,
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()


_runtime: Optional[Runtime] = None
_lock = threading.Lock()
_closing: set[asyncio.Task] = set()


def _on_cache_closed(task: asyncio.Task) -> None:
    _closing.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_cache_close_failed", error_type=type(exc).__name__, error=str(exc))


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> Runtime:
    """Drop the current runtime and build a fresh one from the environment.

    Only permitted with ``TEST_MODE`` on.
    """
    global _runtime
    with _lock:
        previous = _runtime
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if previous is not None and isinstance(previous.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is None:
                asyncio.run(previous.cache.close())
            else:
                task = loop.create_task(previous.cache.close())
                _closing.add(task)
                task.add_done_callback(_on_cache_closed)
        _runtime = Runtime(settings)
        return _runtime

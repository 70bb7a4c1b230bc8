"""structlog setup shared by every module.

Configured once at import from ``LOG_LEVEL`` (default INFO), ``LOG_JSON``
(default on) and ``LOG_DEV_MODE`` (coloured console output).
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("authera_request_id", default=None)

# Substrings of event keys whose values never reach a log sink unmasked
_SENSITIVE_KEY_PARTS = ("secret", "token", "authorization", "cookie", "otp", "session_id", "code")


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    value = (correlation_id or "").strip()[:128] or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _mask(value)
    return f"{local[:1]}***@{domain}"


def _with_request_id(_: Any, __: str, event: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    request_id = _request_id.get()
    if request_id and "correlation_id" not in event:
        event["correlation_id"] = request_id
    return event


def _scrub(_: Any, __: str, event: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key, value in list(event.items()):
        if not isinstance(value, str) or key in ("event", "error_code", "status_code"):
            continue
        lowered = key.lower()
        if "email" in lowered or lowered in ("to", "recipient"):
            event[key] = _mask_email(value)
        elif any(part in lowered for part in _SENSITIVE_KEY_PARTS):
            event[key] = _mask(value)
    return event


def _truthy(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def configure_logging(*, level: str = "INFO", json_output: bool = True, dev_mode: bool = False) -> None:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _with_request_id,
        _scrub,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    level_value = logging.getLevelName(level.upper())
    if not isinstance(level_value, int):
        level_value = logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_truthy("LOG_JSON", True),
    dev_mode=_truthy("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

from __future__ import annotations

from typing import Any, Mapping, Optional


class ConstraintViolation(Exception):
    """A write collided with an existing row (duplicate email)."""

    def __init__(self, message: str, detail: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})


class CacheUnavailable(Exception):
    """Sessions, counters or token claims could not be read or written."""

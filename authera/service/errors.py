"""Exceptions raised by the auth services.

The API layer renders each one as the JSON error envelope, using the class's
``status_code`` and ``error_code``. Extra ``headers`` (``Retry-After`` on rate
limits) are copied onto the response.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class ServiceError(Exception):
    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        self.headers = dict(headers or {})

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status_code={self.status_code})"


class ValidationError(ServiceError):
    """A required field is missing or unusable."""

    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    pass


class TokenInvalidError(AuthenticationError):
    """Forged, malformed, replayed, or minted for a different step of the flow."""


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """The email is already registered."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """A backing store or the mail relay failed."""

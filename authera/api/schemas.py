from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TOKEN_LENGTH = 4096
MAX_NAME_LENGTH = 200


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class ErrorEnvelope(BaseModel):
    """Error response; ``message`` is duplicated at the top level for simple clients."""

    status: str = Field("error", pattern="^error$")
    message: str
    error: ErrorBody
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _optional_email(value: Optional[str]) -> Optional[str]:
    # Blank is left for the handler to report as missing
    if value is None or not value.strip():
        return None
    return _validate_email(value)


def _code_to_str(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value).zfill(6)
    return value


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class RegisterRequest(_Request):
    name: Optional[str] = Field(None, max_length=MAX_NAME_LENGTH)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _optional_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value) if value else value


class RegisterResponse(BaseModel):
    message: str
    setupToken: str


class SetupTwoFactorResponse(BaseModel):
    qr: str
    base32: str
    email: str


class ConfirmTwoFactorRequest(_Request):
    token: Optional[str] = Field(None, max_length=MAX_TOKEN_LENGTH)
    code: Optional[str] = Field(None, max_length=16)
    base32: Optional[str] = Field(None, max_length=128)

    @field_validator("code", mode="before")
    @classmethod
    def _coerce_code(cls, value: Any) -> Any:
        return _code_to_str(value)


class LoginRequest(_Request):
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _optional_email(value)


class VerifyTwoFactorRequest(_Request):
    token: Optional[str] = Field(None, max_length=MAX_TOKEN_LENGTH)
    code: Optional[str] = Field(None, max_length=16)

    @field_validator("code", mode="before")
    @classmethod
    def _coerce_code(cls, value: Any) -> Any:
        return _code_to_str(value)


class VerifyTwoFactorResponse(BaseModel):
    message: str
    redirectTo: str


class ValidateTokenRequest(_Request):
    token: Optional[str] = Field(None, max_length=MAX_TOKEN_LENGTH)


class ValidateTokenResponse(BaseModel):
    valid: bool


class MessageResponse(BaseModel):
    message: str

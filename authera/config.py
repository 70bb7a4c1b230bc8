from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authera.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}

DEFAULT_DATA_DIR = "/var/lib/authera"
_SECRET_FILE = ".jwt_secret"
_MIN_SECRET_LENGTH = 32


def parse_duration(value: Any) -> int:
    """Parse ``300``, ``"300s"``, ``"5m"``, ``"1h"`` or ``"1d"`` into seconds."""

    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '5m'")
    if isinstance(value, (int, float)):
        seconds = int(value)
    else:
        match = _DURATION_PATTERN.match(str(value))
        if not match:
            raise ValueError(f"invalid duration '{value}'")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    if seconds <= 0:
        raise ValueError("duration must be positive")
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _read_secret(path: Path) -> str | None:
    if not path.is_file() or path.is_symlink():
        return None
    persisted = path.read_text().strip()
    return persisted if len(persisted) >= _MIN_SECRET_LENGTH else None


def _load_or_create_secret(path: Path) -> str:
    """Return the secret stored at ``path``, generating and storing one on first use.

    Concurrent workers race on a hard link, so all of them end up with the
    same value. Raises ``OSError`` if the directory is not writable.
    """
    existing = _read_secret(path)
    if existing:
        return existing

    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f"{path.name}.", suffix=".tmp")
    try:
        os.fchmod(fd, 0o600)
        os.write(fd, generated.encode())
        os.fsync(fd)
    finally:
        os.close(fd)
    try:
        os.link(tmp_path, path)
    except FileExistsError:
        existing = _read_secret(path)
        if existing is None:
            raise
        return existing
    finally:
        os.unlink(tmp_path)
    logger.warning(
        "jwt_secret_generated",
        path=str(path),
        message="JWT_SECRET is not set; generated one and stored it for later restarts",
    )
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication backend."""

    database_url: str = env_field("postgresql://localhost:5432/authera", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_timeout_seconds: float = env_field(5.0, "REDIS_TIMEOUT_SECONDS")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviour; enables the in-memory cache fallback.",
    )
    data_dir: str = env_field(
        DEFAULT_DATA_DIR,
        "AUTHERA_DATA_DIR",
        description="Where a generated JWT secret is kept when JWT_SECRET is unset",
    )

    client_url: str = env_field("http://localhost:5173", "CLIENT_URL")
    backend_url: str = env_field("http://localhost:8000", "BACKEND_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Key rate limits on the first X-Forwarded-For hop instead of the peer address",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authera", "JWT_ISSUER")
    jwt_audience: str = env_field("authera-clients", "JWT_AUDIENCE")
    token_ttl_seconds: int = env_field(
        300, "JWT_EXPIRY", description="Lifetime of setup, login and 2FA tokens ('5m', '300', '1h')"
    )
    single_use_tokens: bool = env_field(True, "SINGLE_USE_TOKENS")
    totp_issuer: str = env_field("Authera", "TOTP_ISSUER")
    totp_encryption_key: str | None = env_field(
        None,
        "TOTP_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest (defaults to JWT_SECRET)",
    )

    session_ttl_seconds: int = env_field(300, "SESSION_TTL_SECONDS")
    session_cookie_name: str = env_field("sid", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("none", "COOKIE_SAMESITE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")

    rate_limit_points: int = env_field(4, "RATE_LIMIT_POINTS")
    rate_limit_duration_seconds: int = env_field(600, "RATE_LIMIT_DURATION_SECONDS")
    two_factor_limit_points: int = env_field(5, "TWO_FACTOR_LIMIT_POINTS")
    two_factor_limit_duration_seconds: int = env_field(
        600, "TWO_FACTOR_LIMIT_DURATION_SECONDS"
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authera", "EMAIL_FROM_NAME")
    email_send_timeout_seconds: float = env_field(45.0, "EMAIL_SEND_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("token_ttl_seconds", "session_ttl_seconds", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> int:
        return parse_duration(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        lowered = value.strip().lower()
        if lowered not in {"lax", "strict", "none"}:
            raise ValueError("COOKIE_SAMESITE must be one of lax, strict, none")
        return lowered

    @field_validator("client_url", "backend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Doubles as the TOTP at-rest key when TOTP_ENCRYPTION_KEY is unset
        data_dir = Path(os.getenv("AUTHERA_DATA_DIR") or DEFAULT_DATA_DIR)
        try:
            return _load_or_create_secret(data_dir / _SECRET_FILE)
        except OSError as exc:
            logger.error("jwt_secret_persist_failed", path=str(data_dir), error=str(exc))
            raise ValueError(
                f"JWT_SECRET is not set and a generated secret could not be stored in {data_dir}; "
                "set JWT_SECRET or point AUTHERA_DATA_DIR at a writable directory"
            ) from exc

    @property
    def allowed_origins(self) -> list[str]:
        return self.cors_allow_origins or [self.client_url]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

"""Key layout and secret encryption shared by the cache and store backends."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

SESSION_PREFIX = "session:"
USER_SESSION_PREFIX = "user_session:"
TOKEN_USED_PREFIX = "token:used:"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def user_session_key(email: str) -> str:
    return f"{USER_SESSION_PREFIX}{email}"


def token_used_key(jti: str) -> str:
    return f"{TOKEN_USED_PREFIX}{jti}"


def rate_key(prefix: str, key: str) -> str:
    return f"{prefix}:{key}"


def dump_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def load_payload(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class SecretCipher:
    """Fernet wrapper for TOTP secrets stored at rest.

    Any string works as key material; it is stretched with SHA-256 into the
    32-byte urlsafe key Fernet expects.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("TOTP encryption key material is required")
        digest = hashlib.sha256(key_material.encode()).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RuntimeError("stored TOTP secret cannot be decrypted") from exc

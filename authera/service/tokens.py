"""HS256 bearer tokens carrying pre-login state between requests.

Every token names its ``purpose``. A setup token cannot be replayed as a login
token, a login token cannot stand in for a 2FA token, and so on: callers pass
the purposes they accept to :meth:`TokenService.verify`.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from authera.logging import get_logger
from authera.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

_RESERVED_CLAIMS = frozenset({"iss", "aud", "iat", "exp", "jti", "purpose"})


class TokenPurpose(str, Enum):
    SETUP = "setup"
    LOGIN = "login"
    TWO_FACTOR = "two_factor"


@dataclass(frozen=True)
class TokenClaims:
    purpose: TokenPurpose
    jti: str
    issued_at: int
    expires_at: int
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> str:
        return self.data.get("email", "")

    @property
    def name(self) -> Optional[str]:
        return self.data.get("name")

    def seconds_left(self, now: float) -> int:
        return max(1, int(self.expires_at - now))


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Mint and verify signed, expiring, purpose-bound tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 300,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.time

    def now(self) -> float:
        return self._clock()

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        claims: dict[str, Any],
        purpose: TokenPurpose,
        *,
        ttl_seconds: int | None = None,
    ) -> str:
        reserved = _RESERVED_CLAIMS.intersection(claims)
        if reserved:
            raise ValueError(f"reserved claims cannot be overridden: {sorted(reserved)}")
        issued_at = int(self.now())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "purpose": TokenPurpose(purpose).value,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds or self.ttl_seconds),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, purposes: Iterable[TokenPurpose]) -> TokenClaims:
        """Check signature, issuer, audience, expiry and purpose.

        Raises:
            TokenExpiredError: the token was valid but ``exp`` has passed
            TokenInvalidError: anything else is wrong with it
        """
        if not token or not isinstance(token, str):
            raise TokenInvalidError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("token malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("token malformed")
        # Pin the algorithm so a crafted header cannot downgrade verification
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("token algorithm rejected")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("token malformed")
        if not isinstance(payload, dict):
            raise TokenInvalidError("token malformed")

        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("token issuer mismatch")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise TokenInvalidError("token audience mismatch")

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("token expiry missing")
        if exp <= self.now():
            raise TokenExpiredError("token expired")

        try:
            purpose = TokenPurpose(payload.get("purpose"))
        except ValueError:
            raise TokenInvalidError("token purpose unknown")
        accepted = {TokenPurpose(p) for p in purposes}
        if purpose not in accepted:
            logger.warning(
                "jwt_purpose_rejected",
                purpose=purpose.value,
                accepted=sorted(p.value for p in accepted),
            )
            raise TokenInvalidError("token purpose rejected")

        jti = payload.get("jti")
        if not isinstance(jti, str) or not jti:
            raise TokenInvalidError("token id missing")

        data = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}
        return TokenClaims(
            purpose=purpose, jti=jti, issued_at=iat, expires_at=exp, data=data
        )

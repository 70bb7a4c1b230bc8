from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    name: str
    email: str
    totp_secret: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, name: str, email: str, totp_secret: str) -> "User":
        return cls(id=str(uuid.uuid4()), name=name, email=email, totp_secret=totp_secret)


@dataclass
class Session:
    id: str
    email: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, email: str, ttl_seconds: int, *, now: datetime | None = None) -> "Session":
        created = now or _utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            email=email,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "user": {"email": self.email},
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, session_id: str, payload: Dict[str, Any]) -> "Session":
        return cls(
            id=session_id,
            email=payload["user"]["email"],
            created_at=datetime.fromisoformat(payload["created_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
        )

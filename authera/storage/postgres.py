from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authera.logging import get_logger
from authera.storage.common import SecretCipher
from authera.storage.errors import ConstraintViolation
from authera.storage.models import User


class PostgresStore:
    """Postgres-backed user store."""

    def __init__(self, dsn: str, *, totp_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(totp_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_user_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_user_table(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    totp_secret TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            name=row["name"],
            email=row["email"],
            totp_secret=self._cipher.decrypt(row["totp_secret"]),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    def create_user(self, name: str, email: str, totp_secret: str) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, totp_secret)
                    VALUES (%s, %s, %s, %s)
                    RETURNING created_at
                    """,
                    (user_id, name, email, self._cipher.encrypt(totp_secret)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("User already exists", {"field": "email"})
        self.logger.info("user_created", user_id=user_id, email=email)
        return User(
            id=user_id,
            name=name,
            email=email,
            totp_secret=totp_secret,
            created_at=row["created_at"] if row else datetime.now(timezone.utc),
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def user_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def close(self) -> None:
        self.pool.close()

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from cozyauth.logging import get_logger
from cozyauth.storage.errors import ConstraintViolation, StorageError
from cozyauth.storage.models import Client, User, new_id, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        avatar_url TEXT,
        provider TEXT NOT NULL,
        provider_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT users_email_key UNIQUE (email),
        CONSTRAINT users_provider_identity_key UNIQUE (provider, provider_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        domain TEXT NOT NULL,
        owner_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        subscription_tier TEXT NOT NULL DEFAULT 'starter',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT clients_owner_id_key UNIQUE (owner_id)
    )
    """,
)

# Constraint name -> field reported in ConstraintViolation.detail
_CONSTRAINT_FIELDS = {
    "users_email_key": "email",
    "users_provider_identity_key": "provider_id",
    "clients_owner_id_key": "owner_id",
}


class PostgresStore:
    """PostgreSQL-backed user/client directory.

    Uniqueness is enforced by the schema, so two concurrent first logins for
    the same identity produce one row and one ConstraintViolation rather than
    duplicates.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _CONSTRAINT_FIELDS.get(constraint or "", "unknown")
            raise ConstraintViolation(
                f"{field} already exists", {"field": field, "constraint": constraint}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_error", error_type=type(exc).__name__)
            raise StorageError("directory unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            avatar_url=row.get("avatar_url"),
            provider=row["provider"],
            provider_id=row.get("provider_id"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _client_from_row(row: Dict[str, Any]) -> Client:
        return Client(
            id=str(row["id"]),
            name=row["name"],
            domain=row["domain"],
            owner_id=str(row["owner_id"]),
            subscription_tier=row.get("subscription_tier") or "starter",
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        provider: str,
        provider_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users (id, email, name, avatar_url, provider, provider_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), email, name, avatar_url, provider, provider_id),
            ).fetchone()
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE provider = %s AND provider_id = %s",
                (provider, provider_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def link_user_provider(
        self,
        user_id: str,
        provider: str,
        provider_id: Optional[str],
        avatar_url: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                   SET provider = %s, provider_id = %s, avatar_url = %s, updated_at = now()
                 WHERE id = %s
                RETURNING *
                """,
                (provider, provider_id, avatar_url, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def touch_user(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE users SET updated_at = now() WHERE id = %s", (user_id,))

    # clients
    def create_client(
        self,
        owner_id: str,
        name: str,
        domain: str,
        *,
        subscription_tier: str = "starter",
    ) -> Client:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO clients (id, name, domain, owner_id, subscription_tier)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), name, domain, owner_id, subscription_tier),
            ).fetchone()
        return self._client_from_row(row)

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM clients WHERE id = %s", (client_id,)).fetchone()
        return self._client_from_row(row) if row else None

    def get_client_by_owner(self, owner_id: str) -> Optional[Client]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM clients WHERE owner_id = %s", (owner_id,)
            ).fetchone()
        return self._client_from_row(row) if row else None

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
            return True
        except StorageError:
            return False

    def close(self) -> None:
        self.pool.close()

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import (
    SecretCipher,
    generate_uuid,
    normalize_email,
    require_credential,
    require_secret_for_enabled,
    row_to_session,
    row_to_user,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import RefreshSession, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        password_hash TEXT,
        password_algo TEXT,
        oauth_provider TEXT,
        oauth_subject TEXT,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT auth_user_credential_present
            CHECK (password_hash IS NOT NULL OR oauth_subject IS NOT NULL),
        CONSTRAINT auth_user_two_factor_secret_present
            CHECK (NOT two_factor_enabled OR two_factor_secret IS NOT NULL)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_user_email_key ON auth_user (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_user_username_key ON auth_user (lower(username))",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_user_oauth_key
        ON auth_user (oauth_provider, oauth_subject) WHERE oauth_subject IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        token TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES auth_user (id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_user_idx ON refresh_session (user_id)",
)

# unique index name -> field reported to callers
_CONSTRAINT_FIELDS = {
    "auth_user_email_key": "email",
    "auth_user_username_key": "username",
    "auth_user_oauth_key": "oauth_subject",
}

_USER_COLUMNS = (
    "id, email, username, password_hash, password_algo, oauth_provider, oauth_subject, "
    "two_factor_enabled, two_factor_secret, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed credential and session store (psycopg 3 with a pool)."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
        pool: ConnectionPool | None = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and unique indexes if they are missing."""
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        field = _CONSTRAINT_FIELDS.get(constraint or "", "identity")
        return ConstraintViolation(f"{field} already exists", {"field": field})

    # users
    def create_user(
        self,
        email: str,
        username: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        oauth_provider: Optional[str] = None,
        oauth_subject: Optional[str] = None,
    ) -> User:
        require_credential(password_hash, oauth_subject)
        user_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO auth_user (id, email, username, password_hash, password_algo,
                                           oauth_provider, oauth_subject)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        username,
                        password_hash,
                        password_algo,
                        oauth_provider,
                        oauth_subject,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        return row_to_user(row, self._cipher)

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM auth_user WHERE {where}", params
            ).fetchone()
        if not row:
            return None
        return row_to_user(row, self._cipher)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = %s", (normalize_email(email),))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("lower(username) = lower(%s)", (username,))

    def get_user_by_oauth(self, provider: str, subject: str) -> Optional[User]:
        return self._fetch_user(
            "oauth_provider = %s AND oauth_subject = %s", (provider, subject)
        )

    def update_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_user
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            return result.rowcount > 0

    def set_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> Optional[User]:
        require_secret_for_enabled(secret, enabled)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_user
                SET two_factor_secret = %s, two_factor_enabled = %s, updated_at = now()
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (self._cipher.encrypt(secret), enabled, user_id),
            ).fetchone()
        if not row:
            return None
        return row_to_user(row, self._cipher)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_days: int = 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> RefreshSession:
        sess = RefreshSession.new(
            user_id, ttl_days=ttl_days, user_agent=user_agent, ip_addr=ip_addr
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_session (token, user_id, created_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.token,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": user_id}) from exc
        return sess

    def consume_session(self, token: str) -> Optional[RefreshSession]:
        # The row lock taken by DELETE makes a concurrent consumer see zero rows.
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM refresh_session WHERE token = %s
                RETURNING token, user_id, created_at, expires_at, user_agent, ip_addr
                """,
                (token,),
            ).fetchone()
        if not row:
            return None
        return row_to_session(row)

    def delete_session(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_session WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def list_user_sessions(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT token, user_id, created_at, expires_at, user_agent, ip_addr
                FROM refresh_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [row_to_session(row) for row in rows]

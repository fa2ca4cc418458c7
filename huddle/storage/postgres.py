from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from huddle.logging import get_logger
from huddle.storage.cipher import SecretCipher
from huddle.storage.common import normalize_email
from huddle.storage.errors import ConstraintViolation, UserMissing
from huddle.storage.models import Session, User

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    username TEXT NOT NULL,
    discriminator TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    date_of_birth TEXT,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    email_verification_token TEXT,
    email_verification_expires_at TIMESTAMPTZ,
    password_reset_token TEXT,
    password_reset_expires_at TIMESTAMPTZ,
    two_factor_secret TEXT,
    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_backup_codes JSONB NOT NULL DEFAULT '[]'::jsonb,
    last_login_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS auth_session (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    refresh_token TEXT NOT NULL,
    device_info TEXT NOT NULL DEFAULT 'Unknown',
    ip_address TEXT NOT NULL DEFAULT 'Unknown',
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

_INDEXES = (
    ("app_user_email_key", "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (email)"),
    (
        "app_user_username_key",
        "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (username)",
    ),
    (
        "app_user_email_verification_token_idx",
        "CREATE INDEX IF NOT EXISTS app_user_email_verification_token_idx "
        "ON app_user (email_verification_token) WHERE email_verification_token IS NOT NULL",
    ),
    (
        "app_user_password_reset_token_idx",
        "CREATE INDEX IF NOT EXISTS app_user_password_reset_token_idx "
        "ON app_user (password_reset_token) WHERE password_reset_token IS NOT NULL",
    ),
    (
        "auth_session_user_token_idx",
        "CREATE INDEX IF NOT EXISTS auth_session_user_token_idx ON auth_session (user_id, refresh_token)",
    ),
    (
        "auth_session_expires_at_idx",
        "CREATE INDEX IF NOT EXISTS auth_session_expires_at_idx ON auth_session (expires_at)",
    ),
)

_UNIQUE_FIELDS = {
    "app_user_email_key": ("email", "email already in use"),
    "app_user_username_key": ("username", "username already taken"),
}


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher(mfa_encryption_key)
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create tables, then indexes one by one.

        Index creation can race with another replica starting up; a failure
        there is logged and startup continues.
        """
        with self._connect() as conn:
            conn.execute(_SCHEMA)
        for name, ddl in _INDEXES:
            try:
                with self._connect() as conn:
                    conn.execute(ddl)
            except errors.Error as exc:
                self.logger.warning("index_creation_failed", index=name, error=str(exc))

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        codes = row.get("two_factor_backup_codes") or []
        if isinstance(codes, str):
            codes = json.loads(codes)
        return User(
            id=row["id"],
            email=row["email"],
            username=row["username"],
            discriminator=row["discriminator"],
            password_hash=row["password_hash"],
            date_of_birth=row.get("date_of_birth"),
            email_verified=bool(row.get("email_verified")),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            two_factor_secret=self._cipher.decrypt(row.get("two_factor_secret")),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_backup_codes=list(codes),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info") or "Unknown",
            ip_address=row.get("ip_address") or "Unknown",
            created_at=row["created_at"],
        )

    # users
    def create_user(
        self,
        email: str,
        username: str,
        discriminator: str,
        password_hash: str,
        *,
        date_of_birth: Optional[str] = None,
        email_verification_token: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, username, discriminator, password_hash, date_of_birth,
                        email_verification_token, email_verification_expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        username,
                        discriminator,
                        password_hash,
                        date_of_birth,
                        email_verification_token,
                        email_verification_expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if constraint not in _UNIQUE_FIELDS:
                raise ConstraintViolation("unique constraint violated", context={"constraint": constraint}) from exc
            field, message = _UNIQUE_FIELDS[constraint]
            raise ConstraintViolation(message, field=field) from exc
        return self._user_from_row(row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM app_user WHERE {where} = %s", (value,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", normalize_email(email))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def _update_user(self, user_id: str, assignments: str, params: tuple) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s",
                (*params, user_id),
            )
            if cur.rowcount == 0:
                raise UserMissing(user_id)

    def set_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None:
        self._update_user(
            user_id,
            "email_verification_token = %s, email_verification_expires_at = %s",
            (token, expires_at),
        )

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE,
                    email_verification_token = NULL,
                    email_verification_expires_at = NULL,
                    updated_at = %s
                WHERE email_verification_token = %s AND email_verification_expires_at > %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None:
        self._update_user(
            user_id,
            "password_reset_token = %s, password_reset_expires_at = %s",
            (token, expires_at),
        )

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s,
                    password_reset_token = NULL,
                    password_reset_expires_at = NULL,
                    updated_at = %s
                WHERE password_reset_token = %s AND password_reset_expires_at > %s
                RETURNING *
                """,
                (password_hash, now, token, now),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_two_factor_material(
        self, user_id: str, secret: str, backup_codes: List[str]
    ) -> None:
        self._update_user(
            user_id,
            "two_factor_secret = %s, two_factor_backup_codes = %s::jsonb",
            (self._cipher.encrypt(secret), json.dumps(list(backup_codes))),
        )

    def enable_two_factor(self, user_id: str) -> None:
        self._update_user(user_id, "two_factor_enabled = TRUE", ())

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id))

    # sessions
    def create_session(
        self,
        user_id: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=expires_at,
            device_info=device_info,
            ip_address=ip_address,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, device_info, ip_address, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.refresh_token,
                        sess.device_info,
                        sess.ip_address,
                        sess.expires_at,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise UserMissing(user_id) from exc
        return sess

    def find_session(self, user_id: str, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s AND refresh_token = %s",
                (user_id, refresh_token),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        expected_refresh_token: Optional[str] = None,
    ) -> Optional[Session]:
        query = "UPDATE auth_session SET refresh_token = %s, expires_at = %s WHERE id = %s"
        params: tuple = (refresh_token, expires_at, session_id)
        if expected_refresh_token is not None:
            query += " AND refresh_token = %s"
            params = (*params, expected_refresh_token)
        with self._connect() as conn:
            row = conn.execute(query + " RETURNING *", params).fetchone()
        return self._session_from_row(row) if row else None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return cur.rowcount

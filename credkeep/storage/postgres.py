from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, Iterable, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from credkeep.logging import get_logger
from credkeep.storage.errors import DuplicateRecord, MissingReference
from credkeep.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    Role,
    User,
    utcnow,
)

logger = get_logger(__name__)

_USER_SELECT = """
    SELECT u.*,
           COALESCE(
               array_agg(ur.role_name) FILTER (WHERE ur.role_name IS NOT NULL),
               '{}'
           ) AS roles
    FROM app_user u
    LEFT JOIN user_roles ur ON ur.user_id = u.id
"""


class PostgresStore:
    """Postgres-backed credential store.

    Sequences that must not interleave (reset consumption, TFA activation,
    refresh rotation) run inside a single ``conn.transaction()`` block.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self.ensure_roles()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the credential tables exist before serving requests."""

        required_tables = [
            "app_user",
            "roles",
            "user_roles",
            "refresh_tokens",
            "password_reset_tokens",
            "email_verification_tokens",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            logger.error("postgres_schema_missing", tables=sorted(missing_tables))
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ensure_roles(self) -> None:
        with self._connect() as conn:
            for role in Role:
                conn.execute(
                    "INSERT INTO roles (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                    (role.value,),
                )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            email_verified=bool(row.get("email_verified", False)),
            tfa_enabled=bool(row.get("tfa_enabled", False)),
            tfa_secret=row.get("tfa_secret"),
            roles={Role(name) for name in row.get("roles") or []},
            created_at=row.get("created_at") or utcnow(),
        )

    def _fetch_user(self, conn, clause: str, params: tuple) -> Optional[User]:
        row = conn.execute(
            f"{_USER_SELECT} WHERE {clause} GROUP BY u.id", params
        ).fetchone()
        return self._user_from_row(row) if row else None

    # users

    def create_user(
        self,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        roles: Optional[Iterable[Role]] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        role_set = set(roles) if roles else {Role.USER}
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, password_algo, first_name, last_name)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user_id, normalized, password_hash, password_algo, first_name, last_name),
                )
                for role in role_set:
                    conn.execute(
                        "INSERT INTO user_roles (user_id, role_name) VALUES (%s, %s)",
                        (user_id, role.value),
                    )
                user = self._fetch_user(conn, "u.id = %s", (user_id,))
        except errors.UniqueViolation:
            raise DuplicateRecord("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            return self._fetch_user(conn, "u.id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            return self._fetch_user(conn, "u.email = %s", (email.strip().lower(),))

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET email_verified = true, updated_at = now() WHERE id = %s",
                (user_id,),
            )
            return self._fetch_user(conn, "u.id = %s", (user_id,))

    def set_tfa_state(
        self, user_id: str, *, secret: Optional[str], enabled: bool
    ) -> Optional[User]:
        if enabled and not secret:
            raise ValueError("tfa cannot be enabled without a secret")
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET tfa_secret = %s, tfa_enabled = %s, updated_at = now()
                WHERE id = %s
                """,
                (secret, enabled, user_id),
            )
            return self._fetch_user(conn, "u.id = %s", (user_id,))

    def activate_tfa(self, user_id: str, expected_secret: str) -> Optional[User]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE app_user SET tfa_enabled = true, updated_at = now()
                WHERE id = %s AND tfa_secret = %s
                RETURNING id
                """,
                (user_id, expected_secret),
            ).fetchone()
            if not row:
                return None
            return self._fetch_user(conn, "u.id = %s", (user_id,))

    def set_user_roles(self, user_id: str, roles: Iterable[Role]) -> Optional[User]:
        new_roles = set(roles)
        if not new_roles:
            raise ValueError("a user needs at least one role")
        with self._connect() as conn, conn.transaction():
            exists = conn.execute(
                "SELECT 1 FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not exists:
                return None
            conn.execute("DELETE FROM user_roles WHERE user_id = %s", (user_id,))
            for role in new_roles:
                conn.execute(
                    "INSERT INTO user_roles (user_id, role_name) VALUES (%s, %s)",
                    (user_id, role.value),
                )
            return self._fetch_user(conn, "u.id = %s", (user_id,))

    # refresh tokens

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (token, user_id, expiry_date, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, record.user_id, record.expiry_date, record.created_at),
                )
        except errors.UniqueViolation:
            raise DuplicateRecord("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise MissingReference("user does not exist", {"user_id": record.user_id})
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return RefreshToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expiry_date=row["expiry_date"],
            created_at=row.get("created_at") or utcnow(),
        )

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_tokens WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_tokens WHERE user_id = %s", (user_id,))
            return result.rowcount

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool:
        try:
            with self._connect() as conn, conn.transaction():
                deleted = conn.execute(
                    "DELETE FROM refresh_tokens WHERE token = %s RETURNING user_id",
                    (old_token,),
                ).fetchone()
                if not deleted:
                    return False
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (token, user_id, expiry_date, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        new_record.token,
                        new_record.user_id,
                        new_record.expiry_date,
                        new_record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateRecord("refresh token already exists", {"field": "token"})
        return True

    # single-use tokens

    def save_password_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_tokens (token, user_id, expiry_date, used, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.token,
                        record.user_id,
                        record.expiry_date,
                        record.used,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise DuplicateRecord("reset token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise MissingReference("user does not exist", {"user_id": record.user_id})
        return record

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expiry_date=row["expiry_date"],
            used=bool(row.get("used", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    def consume_password_reset_token(
        self,
        token: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Flip ``used`` and write the new hash in one transaction.

        The conditional UPDATE is the compare-and-set: of two concurrent
        callers only one sees a returned row.
        """
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE password_reset_tokens SET used = true
                WHERE token = %s AND used = false AND expiry_date >= %s
                RETURNING user_id
                """,
                (token, now or utcnow()),
            ).fetchone()
            if not row:
                return None
            user_id = str(row["user_id"])
            conn.execute(
                """
                UPDATE app_user SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            conn.execute("DELETE FROM refresh_tokens WHERE user_id = %s", (user_id,))
            return self._fetch_user(conn, "u.id = %s", (user_id,))

    def save_email_verification_token(
        self, record: EmailVerificationToken
    ) -> EmailVerificationToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO email_verification_tokens (token, user_id, expiry_date, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.token, record.user_id, record.expiry_date, record.created_at),
                )
        except errors.UniqueViolation:
            raise DuplicateRecord("verification token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise MissingReference("user does not exist", {"user_id": record.user_id})
        return record

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_verification_tokens WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return EmailVerificationToken(
            token=row["token"],
            user_id=str(row["user_id"]),
            expiry_date=row["expiry_date"],
            created_at=row.get("created_at") or utcnow(),
        )

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        with self._connect() as conn, conn.transaction():
            refresh = conn.execute(
                "DELETE FROM refresh_tokens WHERE expiry_date < %s", (now,)
            ).rowcount
            reset = conn.execute(
                "DELETE FROM password_reset_tokens WHERE used = true OR expiry_date < %s",
                (now,),
            ).rowcount
            verification = conn.execute(
                "DELETE FROM email_verification_tokens WHERE expiry_date < %s", (now,)
            ).rowcount
        return {
            "refresh_tokens": refresh,
            "password_reset_tokens": reset,
            "email_verification_tokens": verification,
        }

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from notehub.logging import get_logger
from notehub.storage.errors import ConstraintViolation, DuplicateEmail
from notehub.storage.models import VALID_STATUSES, TokenKind, User

PROFILE_COLUMNS = ("name", "university", "course", "semester")
EMAIL_UNIQUE_INDEX = "app_user_email_lower_idx"

# Column pairs per token kind; interpolated into SQL only from this table
_TOKEN_COLUMNS = {
    TokenKind.VERIFICATION: ("verification_token_hash", "verification_token_expires_at"),
    TokenKind.RESET: ("reset_token_hash", "reset_token_expires_at"),
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL CHECK (password_hash <> ''),
    role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('student', 'admin')),
    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
    account_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (account_status IN ('pending', 'active', 'suspended')),
    university TEXT,
    course TEXT,
    semester INTEGER CHECK (semester BETWEEN 1 AND 12),
    verification_token_hash TEXT,
    verification_token_expires_at TIMESTAMPTZ,
    reset_token_hash TEXT,
    reset_token_expires_at TIMESTAMPTZ,
    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
    lock_until TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    password_changed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ,
    CHECK ((verification_token_hash IS NULL) = (verification_token_expires_at IS NULL)),
    CHECK ((reset_token_hash IS NULL) = (reset_token_expires_at IS NULL))
);
CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email));
CREATE INDEX IF NOT EXISTS app_user_verification_token_idx
    ON app_user (verification_token_hash) WHERE verification_token_hash IS NOT NULL;
CREATE INDEX IF NOT EXISTS app_user_reset_token_idx
    ON app_user (reset_token_hash) WHERE reset_token_hash IS NOT NULL;
"""


class PostgresStore:
    """Postgres-backed credential store.

    Each state transition is a single ``UPDATE ... RETURNING *`` whose
    ``WHERE`` clause carries the precondition, so concurrent requests never
    lose an update and a token can only be consumed once.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # reads
    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_token_hash(self, kind: TokenKind, token_hash: str) -> Optional[User]:
        hash_col, _ = _TOKEN_COLUMNS[TokenKind(kind)]
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {hash_col} = %s", (token_hash,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at ASC, id ASC LIMIT %s", (limit,)
            ).fetchall()
        return [_user_from_row(r) for r in rows]

    # writes
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, name, email, password_hash, role, is_verified,
                        account_status, university, course, semester,
                        verification_token_hash, verification_token_expires_at,
                        failed_login_attempts, password_changed_at, created_at
                    ) VALUES (
                        %(id)s, %(name)s, %(email)s, %(password_hash)s, %(role)s,
                        %(is_verified)s, %(account_status)s, %(university)s,
                        %(course)s, %(semester)s,
                        %(verification_token_hash)s, %(verification_token_expires_at)s,
                        %(failed_login_attempts)s,
                        %(password_changed_at)s, %(created_at)s
                    )
                    RETURNING *
                    """,
                    {
                        "id": user.id,
                        "name": user.name,
                        "email": user.email,
                        "password_hash": user.password_hash,
                        "role": user.role,
                        "is_verified": user.is_verified,
                        "account_status": user.account_status,
                        "university": user.university,
                        "course": user.course,
                        "semester": user.semester,
                        "verification_token_hash": user.verification_token_hash,
                        "verification_token_expires_at": user.verification_token_expires_at,
                        "failed_login_attempts": user.failed_login_attempts,
                        "password_changed_at": user.password_changed_at,
                        "created_at": user.created_at,
                    },
                ).fetchone()
        except errors.UniqueViolation as exc:
            if exc.diag.constraint_name == EMAIL_UNIQUE_INDEX:
                raise DuplicateEmail(user.email) from exc
            raise ConstraintViolation("user already exists", {"field": "id"}) from exc
        except errors.CheckViolation as exc:
            raise ConstraintViolation(
                "user record rejected", {"constraint": exc.diag.constraint_name}
            ) from exc
        return _user_from_row(row)

    def set_token(
        self, user_id: str, kind: TokenKind, token_hash: str, expires_at: datetime
    ) -> Optional[User]:
        hash_col, exp_col = _TOKEN_COLUMNS[TokenKind(kind)]
        return self._update_returning(
            f"UPDATE app_user SET {hash_col} = %(hash)s, {exp_col} = %(expires_at)s "
            "WHERE id = %(id)s RETURNING *",
            {"id": user_id, "hash": token_hash, "expires_at": expires_at},
        )

    def clear_token(
        self, user_id: str, kind: TokenKind, *, expected_hash: Optional[str] = None
    ) -> bool:
        hash_col, exp_col = _TOKEN_COLUMNS[TokenKind(kind)]
        sql = f"UPDATE app_user SET {hash_col} = NULL, {exp_col} = NULL WHERE id = %(id)s"
        params: Dict[str, Any] = {"id": user_id}
        if expected_hash is not None:
            sql += f" AND {hash_col} = %(expected)s"
            params["expected"] = expected_hash
        return self._update_returning(sql + " RETURNING *", params) is not None

    def complete_email_verification(
        self, user_id: str, token_hash: str, now: datetime
    ) -> Optional[User]:
        return self._update_returning(
            """
            UPDATE app_user SET
                is_verified = TRUE,
                account_status = CASE WHEN account_status = 'pending'
                    THEN 'active' ELSE account_status END,
                verification_token_hash = NULL,
                verification_token_expires_at = NULL,
                updated_at = %(now)s
            WHERE id = %(id)s
              AND verification_token_hash = %(hash)s
              AND verification_token_expires_at > %(now)s
            RETURNING *
            """,
            {"id": user_id, "hash": token_hash, "now": now},
        )

    def complete_password_reset(
        self, user_id: str, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        return self._update_returning(
            """
            UPDATE app_user SET
                password_hash = %(password_hash)s,
                password_changed_at = %(now)s,
                reset_token_hash = NULL,
                reset_token_expires_at = NULL,
                failed_login_attempts = 0,
                lock_until = NULL,
                updated_at = %(now)s
            WHERE id = %(id)s
              AND reset_token_hash = %(hash)s
              AND reset_token_expires_at > %(now)s
            RETURNING *
            """,
            {"id": user_id, "hash": token_hash, "password_hash": password_hash, "now": now},
        )

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        now: datetime,
        *,
        expected_hash: Optional[str] = None,
    ) -> Optional[User]:
        if not password_hash:
            raise ConstraintViolation("password hash must be non-empty", {"field": "password_hash"})
        sql = (
            "UPDATE app_user SET password_hash = %(password_hash)s, "
            "password_changed_at = %(now)s, updated_at = %(now)s WHERE id = %(id)s"
        )
        params: Dict[str, Any] = {"id": user_id, "password_hash": password_hash, "now": now}
        if expected_hash is not None:
            sql += " AND password_hash = %(expected)s"
            params["expected"] = expected_hash
        return self._update_returning(sql + " RETURNING *", params)

    def record_failed_login(
        self, user_id: str, now: datetime, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        # SET expressions all read the pre-update row
        return self._update_returning(
            """
            UPDATE app_user SET
                failed_login_attempts = CASE
                    WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                    ELSE failed_login_attempts + 1
                END,
                lock_until = CASE
                    WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN NULL
                    WHEN lock_until IS NULL AND failed_login_attempts + 1 >= %(max_attempts)s
                        THEN %(lock_until)s
                    ELSE lock_until
                END
            WHERE id = %(id)s
            RETURNING *
            """,
            {
                "id": user_id,
                "now": now,
                "max_attempts": max_attempts,
                "lock_until": lock_until,
            },
        )

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_returning(
            "UPDATE app_user SET failed_login_attempts = 0, lock_until = NULL, "
            "last_login_at = %(now)s WHERE id = %(id)s RETURNING *",
            {"id": user_id, "now": now},
        )

    def set_account_status(
        self,
        user_id: str,
        status: str,
        now: datetime,
        *,
        expected: Optional[str] = None,
    ) -> Optional[User]:
        if status not in VALID_STATUSES:
            raise ConstraintViolation("invalid account status", {"field": "account_status"})
        sql = (
            "UPDATE app_user SET account_status = %(status)s, updated_at = %(now)s "
            "WHERE id = %(id)s"
        )
        params: Dict[str, Any] = {"id": user_id, "status": status, "now": now}
        if expected is not None:
            sql += " AND account_status = %(expected)s"
            params["expected"] = expected
        return self._update_returning(sql + " RETURNING *", params)

    def promote_to_admin(self, user_id: str, now: datetime) -> Optional[User]:
        return self._update_returning(
            """
            UPDATE app_user SET
                role = 'admin',
                is_verified = TRUE,
                account_status = 'active',
                verification_token_hash = NULL,
                verification_token_expires_at = NULL,
                updated_at = %(now)s
            WHERE id = %(id)s AND account_status <> 'suspended'
            RETURNING *
            """,
            {"id": user_id, "now": now},
        )

    def update_profile(self, user_id: str, now: datetime, **fields) -> Optional[User]:
        unknown = set(fields) - set(PROFILE_COLUMNS)
        if unknown:
            raise ConstraintViolation("unknown profile fields", {"fields": sorted(unknown)})
        assignments = [f"{col} = %({col})s" for col in PROFILE_COLUMNS if col in fields]
        assignments.append("updated_at = %(now)s")
        params: Dict[str, Any] = {"id": user_id, "now": now, **fields}
        return self._update_returning(
            f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %(id)s RETURNING *",
            params,
        )

    def _update_returning(self, sql: str, params: Dict[str, Any]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _user_from_row(row) if row else None


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        name=row["name"],
        email=row["email"],
        password_hash=row["password_hash"],
        role=row.get("role") or "student",
        is_verified=bool(row.get("is_verified")),
        account_status=row.get("account_status") or "pending",
        university=row.get("university"),
        course=row.get("course"),
        semester=row.get("semester"),
        verification_token_hash=row.get("verification_token_hash"),
        verification_token_expires_at=row.get("verification_token_expires_at"),
        reset_token_hash=row.get("reset_token_hash"),
        reset_token_expires_at=row.get("reset_token_expires_at"),
        failed_login_attempts=row.get("failed_login_attempts") or 0,
        lock_until=row.get("lock_until"),
        last_login_at=row.get("last_login_at"),
        password_changed_at=row.get("password_changed_at"),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
    )

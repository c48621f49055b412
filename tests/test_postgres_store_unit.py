from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from notehub.storage.errors import ConstraintViolation, DuplicateEmail
from notehub.storage.models import TokenKind, User
from notehub.storage.postgres import EMAIL_UNIQUE_INDEX, PostgresStore

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "id": "user-1",
        "name": "Bob Jones",
        "email": "bob@example.com",
        "password_hash": "$argon2id$stub",
        "role": "student",
        "is_verified": True,
        "account_status": "active",
        "failed_login_attempts": 0,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


class _Result:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class RecordingConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.calls.append((" ".join(sql.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        return _Result(self.pool.rows)


class RecordingPool:
    """Stands in for psycopg_pool.ConnectionPool and records every statement."""

    def __init__(self, rows=None, error=None):
        self.calls = []
        self.rows = rows if rows is not None else []
        self.error = error

    def connection(self):
        return RecordingConnection(self)


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://test"
    store.logger = SimpleNamespace(info=lambda *a, **k: None)
    return store


class _EmailUniqueViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name=EMAIL_UNIQUE_INDEX)


class _PrimaryKeyViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_user_pkey")


def test_get_user_by_email_is_case_insensitive():
    pool = RecordingPool(rows=[_row()])
    user = _store(pool).get_user_by_email("  Bob@Example.com ")
    sql, params = pool.calls[0]
    assert "lower(email) = lower(%s)" in sql
    assert params == ("Bob@Example.com",)
    assert user.email == "bob@example.com"


def test_missing_row_returns_none():
    assert _store(RecordingPool()).get_user("nope") is None


def test_token_lookup_uses_column_for_kind():
    pool = RecordingPool(rows=[_row(reset_token_hash="abc", reset_token_expires_at=NOW)])
    user = _store(pool).get_user_by_token_hash(TokenKind.RESET, "abc")
    assert "WHERE reset_token_hash = %s" in pool.calls[0][0]
    assert user.reset_token_hash == "abc"


def test_create_user_maps_email_index_violation_to_duplicate():
    pool = RecordingPool(error=_EmailUniqueViolation("duplicate key"))
    user = User.new(name="Bob Jones", email="bob@example.com", password_hash="x", now=NOW)
    with pytest.raises(DuplicateEmail):
        _store(pool).create_user(user)


def test_create_user_other_unique_violation_is_generic_conflict():
    pool = RecordingPool(error=_PrimaryKeyViolation("duplicate key"))
    user = User.new(name="Bob Jones", email="bob@example.com", password_hash="x", now=NOW)
    with pytest.raises(ConstraintViolation) as excinfo:
        _store(pool).create_user(user)
    assert not isinstance(excinfo.value, DuplicateEmail)


def test_create_user_persists_verification_token_in_same_insert():
    pool = RecordingPool(rows=[_row(is_verified=False, account_status="pending")])
    user = User.new(name="Bob Jones", email="bob@example.com", password_hash="x", now=NOW)
    user.verification_token_hash = "digest"
    user.verification_token_expires_at = NOW + timedelta(hours=24)
    _store(pool).create_user(user)
    assert len(pool.calls) == 1
    sql, params = pool.calls[0]
    assert sql.startswith("INSERT INTO app_user")
    assert params["verification_token_hash"] == "digest"


def test_verification_update_is_guarded_by_hash_and_expiry():
    pool = RecordingPool(rows=[])
    result = _store(pool).complete_email_verification("user-1", "digest", NOW)
    sql, params = pool.calls[0]
    assert result is None
    assert "verification_token_hash = %(hash)s" in sql
    assert "verification_token_expires_at > %(now)s" in sql
    assert params["hash"] == "digest"


def test_failed_login_is_a_single_conditional_update():
    pool = RecordingPool(rows=[_row(failed_login_attempts=5, lock_until=NOW + timedelta(hours=2))])
    user = _store(pool).record_failed_login("user-1", NOW, 5, NOW + timedelta(hours=2))
    assert len(pool.calls) == 1
    sql, params = pool.calls[0]
    assert sql.startswith("UPDATE app_user SET failed_login_attempts = CASE")
    assert params["max_attempts"] == 5
    assert user.is_locked(NOW)


def test_clear_token_with_expected_hash_adds_guard():
    pool = RecordingPool(rows=[])
    cleared = _store(pool).clear_token("user-1", TokenKind.RESET, expected_hash="digest")
    sql, params = pool.calls[0]
    assert not cleared
    assert "AND reset_token_hash = %(expected)s" in sql
    assert params["expected"] == "digest"


def test_set_account_status_rejects_unknown_status():
    pool = RecordingPool()
    with pytest.raises(ConstraintViolation):
        _store(pool).set_account_status("user-1", "deleted", NOW)
    assert pool.calls == []


def test_update_profile_only_touches_known_columns():
    pool = RecordingPool(rows=[_row(course="Physics")])
    user = _store(pool).update_profile("user-1", NOW, course="Physics")
    sql, params = pool.calls[0]
    assert "course = %(course)s" in sql
    assert "name =" not in sql
    assert user.course == "Physics"
    with pytest.raises(ConstraintViolation):
        _store(pool).update_profile("user-1", NOW, role="admin")


def test_list_users_orders_oldest_first():
    pool = RecordingPool(rows=[_row(), _row(id="user-2", email="carol@example.com")])
    users = _store(pool).list_users(limit=10)
    sql, params = pool.calls[0]
    assert "ORDER BY created_at ASC" in sql
    assert params == (10,)
    assert [u.id for u in users] == ["user-1", "user-2"]


def test_promote_to_admin_skips_suspended_accounts():
    pool = RecordingPool(rows=[])
    assert _store(pool).promote_to_admin("user-1", NOW) is None
    sql, params = pool.calls[0]
    assert "account_status <> 'suspended'" in sql
    assert params == {"id": "user-1", "now": NOW}

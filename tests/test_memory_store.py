import json
import threading
from datetime import timedelta

import pytest

from conftest import T0
from notehub.storage.errors import ConstraintViolation, DuplicateEmail
from notehub.storage.memory import MemoryStore
from notehub.storage.models import TokenKind, User


def _user(email="bob@example.com", **kwargs):
    return User.new(name="Bob Jones", email=email, password_hash="$argon2id$stub", now=T0, **kwargs)


def test_user_round_trips_through_snapshot(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    created = store.create_user(_user(university="State University", semester=2))
    store.set_token(created.id, TokenKind.RESET, "digest", T0 + timedelta(hours=1))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    user = reloaded.get_user(created.id)
    assert user.email == "bob@example.com"
    assert user.university == "State University"
    assert user.reset_token_hash == "digest"
    assert user.reset_token_expires_at == T0 + timedelta(hours=1)
    assert user.created_at == T0


def test_snapshot_is_plain_json(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user(_user())
    data = json.loads((tmp_path / "state" / "users.json").read_text())
    assert data["users"][0]["email"] == "bob@example.com"


def test_corrupt_snapshot_refuses_to_start(tmp_path):
    state = tmp_path / "state"
    state.mkdir()
    (state / "users.json").write_text("{not json")
    with pytest.raises(RuntimeError):
        MemoryStore(fs_root=str(tmp_path))


def test_duplicate_email_is_case_insensitive(memory_store):
    memory_store.create_user(_user())
    with pytest.raises(DuplicateEmail):
        memory_store.create_user(_user(email="BOB@example.COM"))
    assert len(memory_store.list_users()) == 1


def test_returned_users_are_copies(memory_store):
    created = memory_store.create_user(_user())
    created.role = "admin"
    fetched = memory_store.get_user(created.id)
    fetched.failed_login_attempts = 99
    assert memory_store.get_user(created.id).role == "student"
    assert memory_store.get_user(created.id).failed_login_attempts == 0


def test_token_lookup_is_scoped_by_kind(memory_store):
    user = memory_store.create_user(_user())
    memory_store.set_token(user.id, TokenKind.VERIFICATION, "digest", T0 + timedelta(hours=1))
    assert memory_store.get_user_by_token_hash(TokenKind.VERIFICATION, "digest").id == user.id
    assert memory_store.get_user_by_token_hash(TokenKind.RESET, "digest") is None


def test_clear_token_only_when_still_current(memory_store):
    user = memory_store.create_user(_user())
    memory_store.set_token(user.id, TokenKind.RESET, "newer", T0 + timedelta(hours=1))
    assert not memory_store.clear_token(user.id, TokenKind.RESET, expected_hash="older")
    assert memory_store.get_user(user.id).reset_token_hash == "newer"
    assert memory_store.clear_token(user.id, TokenKind.RESET, expected_hash="newer")
    assert memory_store.get_user(user.id).reset_token_hash is None


def test_verification_consumed_exactly_once_under_concurrency(memory_store):
    user = memory_store.create_user(_user())
    memory_store.set_token(user.id, TokenKind.VERIFICATION, "digest", T0 + timedelta(hours=1))
    results = []

    def _consume():
        results.append(memory_store.complete_email_verification(user.id, "digest", T0))

    threads = [threading.Thread(target=_consume) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sum(1 for r in results if r is not None) == 1


def test_expired_token_is_not_consumed(memory_store):
    user = memory_store.create_user(_user())
    memory_store.set_token(user.id, TokenKind.RESET, "digest", T0)
    assert memory_store.complete_password_reset(user.id, "digest", "$argon2id$new", T0) is None
    assert memory_store.get_user(user.id).password_hash == "$argon2id$stub"


def test_update_password_with_stale_expected_hash(memory_store):
    user = memory_store.create_user(_user())
    assert memory_store.update_password(user.id, "$argon2id$new", T0, expected_hash="stale") is None
    updated = memory_store.update_password(
        user.id, "$argon2id$new", T0 + timedelta(minutes=1), expected_hash="$argon2id$stub"
    )
    assert updated.password_changed_at == T0 + timedelta(minutes=1)


def test_set_account_status_checks_expected(memory_store):
    user = memory_store.create_user(_user())
    assert memory_store.set_account_status(user.id, "suspended", T0, expected="active") is None
    assert memory_store.set_account_status(user.id, "suspended", T0, expected="pending")
    with pytest.raises(ConstraintViolation):
        memory_store.set_account_status(user.id, "deleted", T0)


def test_update_profile_rejects_unknown_fields(memory_store):
    user = memory_store.create_user(_user())
    with pytest.raises(ConstraintViolation):
        memory_store.update_profile(user.id, T0, role="admin")
    assert memory_store.update_profile(user.id, T0, course="Physics").course == "Physics"


def test_user_invariants():
    with pytest.raises(ValueError):
        User.new(name="Bob", email="b@example.com", password_hash="")
    with pytest.raises(ValueError):
        User.new(name="Bob", email="b@example.com", password_hash="x", role="owner")


def test_list_users_oldest_first(memory_store):
    later = User.new(
        name="Carol King", email="carol@example.com", password_hash="x", now=T0 + timedelta(minutes=5)
    )
    memory_store.create_user(later)
    memory_store.create_user(_user())
    assert [u.email for u in memory_store.list_users()] == [
        "bob@example.com",
        "carol@example.com",
    ]

"""Tests for the failed-login lockout policy."""

import threading
from datetime import timedelta

import pytest

from conftest import T0
from notehub.service.lockout import LockoutPolicy
from notehub.storage.memory import MemoryStore
from notehub.storage.models import TokenKind, User


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def policy(store, clock):
    return LockoutPolicy(store, max_attempts=5, lock_duration=timedelta(minutes=120), clock=clock)


@pytest.fixture
def user(store):
    return store.create_user(
        User.new(name="Alice", email="alice@uni.edu", password_hash="$argon2id$stub", now=T0)
    )


def _fail(policy, store, user, times):
    state = None
    for _ in range(times):
        state = policy.record_failure(store.get_user(user.id))
    return state


def test_four_failures_do_not_lock(policy, store, user):
    state = _fail(policy, store, user, 4)
    assert not state.locked
    assert state.attempts == 4


def test_fifth_failure_locks_for_two_hours(policy, store, user, clock):
    state = _fail(policy, store, user, 5)
    assert state.locked
    assert state.until == T0 + timedelta(minutes=120)
    assert state.retry_after_seconds(clock()) == 120 * 60


def test_still_locked_just_before_expiry(policy, store, user, clock):
    _fail(policy, store, user, 5)
    clock.advance(minutes=119)
    assert policy.is_locked(store.get_user(user.id))


def test_next_failure_after_expiry_restarts_count(policy, store, user, clock):
    _fail(policy, store, user, 5)
    clock.advance(minutes=121)
    refreshed = store.get_user(user.id)
    assert not policy.is_locked(refreshed)

    state = policy.record_failure(refreshed)
    assert not state.locked
    assert state.attempts == 1
    assert store.get_user(user.id).lock_until is None


def test_failures_while_locked_do_not_extend_lock(policy, store, user, clock):
    _fail(policy, store, user, 5)
    clock.advance(minutes=30)
    state = policy.record_failure(store.get_user(user.id))
    assert state.until == T0 + timedelta(minutes=120)


def test_success_clears_counter_and_records_login(policy, store, user, clock):
    _fail(policy, store, user, 3)
    updated = policy.record_success(store.get_user(user.id))
    assert updated.failed_login_attempts == 0
    assert updated.lock_until is None
    assert updated.last_login_at == clock()


def test_completed_password_reset_clears_active_lock(policy, store, user, clock):
    _fail(policy, store, user, 5)
    store.set_token(user.id, TokenKind.RESET, "digest", clock() + timedelta(hours=1))
    updated = store.complete_password_reset(user.id, "digest", "$argon2id$new", clock())
    assert updated.failed_login_attempts == 0
    assert not policy.is_locked(updated)


def test_concurrent_failures_are_all_counted(policy, store, user):
    snapshot = store.get_user(user.id)
    threads = [threading.Thread(target=policy.record_failure, args=(snapshot,)) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get_user(user.id).failed_login_attempts == 4

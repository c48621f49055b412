from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from notehub.logging import get_logger
from notehub.storage.errors import ConstraintViolation, DuplicateEmail
from notehub.storage.models import (
    ROLE_ADMIN,
    STATUS_ACTIVE,
    STATUS_PENDING,
    STATUS_SUSPENDED,
    VALID_STATUSES,
    TokenKind,
    User,
)

PROFILE_FIELDS = frozenset({"name", "university", "course", "semester"})


class MemoryStore:
    """In-process credential store persisted as a JSON snapshot.

    Every read-modify-write runs inside one critical section under
    ``_data_lock`` so concurrent requests for the same account observe each
    other's updates. Callers always receive copies; mutating a returned
    ``User`` never changes stored state.
    """

    def __init__(self, fs_root: str = "/tmp/notehub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers may re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    # reads
    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = self._find_by_email(normalized)
            return replace(user) if user else None

    def get_user_by_token_hash(self, kind: TokenKind, token_hash: str) -> Optional[User]:
        field_name = TokenKind(kind).hash_field
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if getattr(u, field_name) == token_hash),
                None,
            )
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in results[:limit]]

    # writes
    def create_user(self, user: User) -> User:
        with self._data_lock:
            if self._find_by_email(user.email) is not None:
                raise DuplicateEmail(user.email)
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def set_token(
        self, user_id: str, kind: TokenKind, token_hash: str, expires_at: datetime
    ) -> Optional[User]:
        kind = TokenKind(kind)

        def _apply(user: User) -> bool:
            setattr(user, kind.hash_field, token_hash)
            setattr(user, kind.expiry_field, expires_at)
            return True

        return self._mutate(user_id, _apply)

    def clear_token(
        self, user_id: str, kind: TokenKind, *, expected_hash: Optional[str] = None
    ) -> bool:
        """Clear a token pair; with ``expected_hash`` only if it is still current."""
        kind = TokenKind(kind)

        def _apply(user: User) -> bool:
            if expected_hash is not None and getattr(user, kind.hash_field) != expected_hash:
                return False
            setattr(user, kind.hash_field, None)
            setattr(user, kind.expiry_field, None)
            return True

        return self._mutate(user_id, _apply) is not None

    def complete_email_verification(
        self, user_id: str, token_hash: str, now: datetime
    ) -> Optional[User]:
        """Consume a verification token and activate the account in one step.

        Returns ``None`` when the token is no longer current, so of two
        concurrent consumers exactly one succeeds.
        """

        def _apply(user: User) -> bool:
            if not _token_current(user, TokenKind.VERIFICATION, token_hash, now):
                return False
            user.is_verified = True
            if user.account_status == STATUS_PENDING:
                user.account_status = STATUS_ACTIVE
            user.verification_token_hash = None
            user.verification_token_expires_at = None
            user.updated_at = now
            return True

        return self._mutate(user_id, _apply)

    def complete_password_reset(
        self, user_id: str, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        def _apply(user: User) -> bool:
            if not _token_current(user, TokenKind.RESET, token_hash, now):
                return False
            user.password_hash = password_hash
            user.password_changed_at = now
            user.reset_token_hash = None
            user.reset_token_expires_at = None
            user.failed_login_attempts = 0
            user.lock_until = None
            user.updated_at = now
            return True

        return self._mutate(user_id, _apply)

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

        def _apply(user: User) -> bool:
            if expected_hash is not None and user.password_hash != expected_hash:
                return False
            user.password_hash = password_hash
            user.password_changed_at = now
            user.updated_at = now
            return True

        return self._mutate(user_id, _apply)

    def record_failed_login(
        self, user_id: str, now: datetime, max_attempts: int, lock_until: datetime
    ) -> Optional[User]:
        """Count a failed login and lock the account when the threshold is hit.

        An expired lock restarts the count at one and is cleared.
        """

        def _apply(user: User) -> bool:
            if user.lock_until is not None and user.lock_until <= now:
                user.failed_login_attempts = 1
                user.lock_until = None
                return True
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= max_attempts and user.lock_until is None:
                user.lock_until = lock_until
            return True

        return self._mutate(user_id, _apply)

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        def _apply(user: User) -> bool:
            user.failed_login_attempts = 0
            user.lock_until = None
            user.last_login_at = now
            return True

        return self._mutate(user_id, _apply)

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

        def _apply(user: User) -> bool:
            if expected is not None and user.account_status != expected:
                return False
            user.account_status = status
            user.updated_at = now
            return True

        return self._mutate(user_id, _apply)

    def promote_to_admin(self, user_id: str, now: datetime) -> Optional[User]:
        """Grant the admin role and mark the account verified and active."""

        def _apply(user: User) -> bool:
            if user.account_status == STATUS_SUSPENDED:
                return False
            user.role = ROLE_ADMIN
            user.is_verified = True
            user.account_status = STATUS_ACTIVE
            user.verification_token_hash = None
            user.verification_token_expires_at = None
            user.updated_at = now
            return True

        return self._mutate(user_id, _apply)

    def update_profile(self, user_id: str, now: datetime, **fields) -> Optional[User]:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ConstraintViolation("unknown profile fields", {"fields": sorted(unknown)})

        def _apply(user: User) -> bool:
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = now
            return True

        return self._mutate(user_id, _apply)

    # internals
    def _find_by_email(self, normalized_email: str) -> Optional[User]:
        return next(
            (u for u in self.users.values() if u.email == normalized_email), None
        )

    def _mutate(self, user_id: str, apply: Callable[[User], bool]) -> Optional[User]:
        """Apply ``apply`` to a working copy and commit it only when it returns True."""
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                return None
            working = replace(current)
            if not apply(working):
                return None
            self.users[user_id] = working
            self._persist_state()
            return replace(working)

    def _persist_state(self) -> None:
        state = {"users": [u.to_dict() for u in self.users.values()]}
        path = self._state_path()
        tmp_path = path.parent / (path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(f"corrupt in-memory state at {path}") from exc
        self.users = {u["id"]: User.from_dict(u) for u in data.get("users", [])}
        self.logger.info("memory_store_state_loaded", users=len(self.users))
        return True


def _token_current(user: User, kind: TokenKind, token_hash: str, now: datetime) -> bool:
    stored = user.token_hash(kind)
    expires_at = user.token_expires_at(kind)
    return stored is not None and stored == token_hash and expires_at is not None and expires_at > now

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from notehub.config import Settings
from notehub.logging import get_logger
from notehub.storage.models import User, utcnow

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def record_failed_login(
        self, user_id: str, now: datetime, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]: ...


@dataclass(frozen=True)
class LockState:
    """Snapshot of an account's lockout state at a given instant.

    ``attempts`` is the stored counter; when a lock has lapsed the counter is
    still reported as stored, because only the next failure resets it.
    """

    locked: bool
    attempts: int
    until: Optional[datetime] = None

    def retry_after_seconds(self, now: datetime) -> int:
        if not self.locked or self.until is None:
            return 0
        return max(0, int((self.until - now).total_seconds()))


class LockoutPolicy:
    """Per-account guard against password guessing.

    Failures accumulate until ``max_attempts``; the failure that reaches the
    threshold locks the account for ``lock_duration`` starting at that
    failure. A lapsed lock is cleared by the next failure, which counts as
    the first of a new run. Successful logins and completed password resets
    clear everything.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        max_attempts: int = 5,
        lock_duration: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: LockoutStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "LockoutPolicy":
        return cls(
            store,
            max_attempts=settings.max_failed_logins,
            lock_duration=timedelta(minutes=settings.lockout_minutes),
            clock=clock,
        )

    def state(self, user: User, now: Optional[datetime] = None) -> LockState:
        now = now or self._clock()
        if user.is_locked(now):
            return LockState(locked=True, attempts=user.failed_login_attempts, until=user.lock_until)
        return LockState(locked=False, attempts=user.failed_login_attempts)

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        return self.state(user, now).locked

    def record_failure(self, user: User) -> LockState:
        now = self._clock()
        updated = self.store.record_failed_login(
            user.id, now, self.max_attempts, now + self.lock_duration
        )
        if updated is None:
            return self.state(user, now)
        state = self.state(updated, now)
        if state.locked and not user.is_locked(now):
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=updated.failed_login_attempts,
                until=state.until.isoformat() if state.until else None,
            )
        return state

    def record_success(self, user: User) -> Optional[User]:
        return self.store.record_successful_login(user.id, self._clock())

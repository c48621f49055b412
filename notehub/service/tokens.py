from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from notehub.config import Settings
from notehub.service.errors import TokenInvalidOrExpiredError
from notehub.storage.models import TokenKind, utcnow

# 32 random bytes, rendered as 64 hex characters
TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedToken:
    kind: TokenKind
    raw: str
    token_hash: str
    expires_at: datetime


class TokenService:
    """Issue and check single-use email verification and password reset tokens.

    Only the SHA-256 digest of a token is ever handed to storage; the raw
    value goes out by email and is never persisted.
    """

    def __init__(
        self,
        *,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ttls = {
            TokenKind.VERIFICATION: verification_ttl,
            TokenKind.RESET: reset_ttl,
        }
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "TokenService":
        return cls(
            verification_ttl=timedelta(minutes=settings.verification_token_ttl_minutes),
            reset_ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
            clock=clock,
        )

    def ttl(self, kind: TokenKind) -> timedelta:
        return self._ttls[TokenKind(kind)]

    @staticmethod
    def hash(raw: str) -> str:
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def issue(self, kind: TokenKind) -> IssuedToken:
        kind = TokenKind(kind)
        raw = secrets.token_hex(TOKEN_BYTES)
        return IssuedToken(
            kind=kind,
            raw=raw,
            token_hash=self.hash(raw),
            expires_at=self._clock() + self._ttls[kind],
        )

    def verify(
        self,
        kind: TokenKind,
        raw: str,
        stored_hash: Optional[str],
        stored_expiry: Optional[datetime],
    ) -> str:
        """Return the digest of ``raw`` if it matches and has not expired.

        An expiry further out than the lifetime of ``kind`` is refused too,
        so a token stored for one purpose cannot outlive the window of another.

        Raises:
            TokenInvalidOrExpiredError: on any mismatch, missing record, or
                an expiry at or before now.
        """
        kind = TokenKind(kind)
        if not raw or not stored_hash or stored_expiry is None:
            raise TokenInvalidOrExpiredError()
        candidate = self.hash(raw)
        if not hmac.compare_digest(candidate, stored_hash):
            raise TokenInvalidOrExpiredError()
        now = self._clock()
        if stored_expiry <= now or stored_expiry > now + self._ttls[kind]:
            raise TokenInvalidOrExpiredError()
        return candidate

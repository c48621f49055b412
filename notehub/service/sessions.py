from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from notehub.config import Settings
from notehub.logging import get_logger
from notehub.service.errors import InvalidTokenError, TokenExpiredError
from notehub.storage.models import VALID_ROLES, utcnow

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def password_stamp(changed_at: Optional[datetime]) -> Optional[int]:
    """Exact microseconds since the epoch of the last password change."""
    if changed_at is None:
        return None
    return (changed_at - _EPOCH) // timedelta(microseconds=1)


@dataclass(frozen=True)
class SessionCredential:
    token: str
    expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    role: str
    issued_at: datetime
    expires_at: datetime
    jti: str
    password_stamp: Optional[int] = None


class SessionIssuer:
    """Mint and check HS256-signed bearer credentials.

    Credentials are self-contained and never stored server-side; logout is
    the client discarding its copy.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "notehub",
        audience: str = "notehub-clients",
        ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("session signing secret must be non-empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "SessionIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.session_ttl_minutes),
            clock=clock,
        )

    def issue(
        self, user_id: str, role: str, *, password_changed_at: Optional[datetime] = None
    ) -> SessionCredential:
        """Mint a credential for ``user_id``.

        ``password_changed_at`` is embedded as the ``pwd_at`` claim so the
        credential can be matched against the account's current password.
        """
        now = self._clock()
        expires_at = now + self.ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "role": role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(uuid.uuid4()),
        }
        stamp = password_stamp(password_changed_at)
        if stamp is not None:
            payload["pwd_at"] = stamp
        return SessionCredential(token=self._encode_jwt(payload), expires_at=expires_at)

    def verify(self, token: str) -> SessionClaims:
        """Check signature, issuer, audience and expiry of ``token``.

        Raises:
            InvalidTokenError: malformed token, wrong algorithm, bad signature
                or claims that do not belong to this issuer.
            TokenExpiredError: the token verified but ``exp`` has passed.
        """
        payload = self._decode_jwt(token)
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidTokenError()
        sub = payload.get("sub")
        role = payload.get("role")
        if not isinstance(sub, str) or not sub or role not in VALID_ROLES:
            raise InvalidTokenError()
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise InvalidTokenError()
        stamp = payload.get("pwd_at")
        if stamp is not None and (not isinstance(stamp, int) or isinstance(stamp, bool)):
            raise InvalidTokenError()
        if expires_at <= self._clock():
            raise TokenExpiredError()
        return SessionClaims(
            user_id=sub,
            role=role,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=str(payload.get("jti", "")),
            password_stamp=stamp,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError()

        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError()
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError()
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        return payload

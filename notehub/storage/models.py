from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
VALID_ROLES = frozenset({ROLE_STUDENT, ROLE_ADMIN})

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
VALID_STATUSES = frozenset({STATUS_PENDING, STATUS_ACTIVE, STATUS_SUSPENDED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    """Purpose of a single-use account token."""

    VERIFICATION = "verification"
    RESET = "reset"

    @property
    def hash_field(self) -> str:
        return f"{self.value}_token_hash"

    @property
    def expiry_field(self) -> str:
        return f"{self.value}_token_expires_at"


_DATETIME_FIELDS = (
    "verification_token_expires_at",
    "reset_token_expires_at",
    "lock_until",
    "last_login_at",
    "password_changed_at",
    "created_at",
    "updated_at",
)


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    role: str = ROLE_STUDENT
    is_verified: bool = False
    account_status: str = STATUS_PENDING
    university: Optional[str] = None
    course: Optional[str] = None
    semester: Optional[int] = None
    verification_token_hash: Optional[str] = None
    verification_token_expires_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.password_hash:
            raise ValueError("password_hash must be non-empty")
        if self.role not in VALID_ROLES:
            raise ValueError(f"invalid role: {self.role}")
        if self.account_status not in VALID_STATUSES:
            raise ValueError(f"invalid account status: {self.account_status}")
        self.email = self.email.strip().lower()

    @classmethod
    def new(
        cls,
        *,
        name: str,
        email: str,
        password_hash: str,
        role: str = ROLE_STUDENT,
        university: Optional[str] = None,
        course: Optional[str] = None,
        semester: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> "User":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            password_hash=password_hash,
            role=role,
            university=university,
            course=course,
            semester=semester,
            password_changed_at=now,
            created_at=now,
        )

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """A user is locked iff lock_until is set and still in the future."""
        if self.lock_until is None:
            return False
        return self.lock_until > (now or utcnow())

    def token_hash(self, kind: TokenKind) -> Optional[str]:
        return getattr(self, kind.hash_field)

    def token_expires_at(self, kind: TokenKind) -> Optional[datetime]:
        return getattr(self, kind.expiry_field)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in _DATETIME_FIELDS:
            raw = values.get(name)
            if isinstance(raw, str):
                values[name] = _parse_datetime(raw)
        return cls(**values)


def _parse_datetime(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


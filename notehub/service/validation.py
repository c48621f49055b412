"""Input validation for account payloads.

Single-field validators normalise and return the value or raise
``ValueError``; pydantic request models reuse them as field validators.
The payload-level helpers collect every field error into a
``ValidationResult`` so the service can reject a request before touching
any account state.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

EMAIL_MAX_LENGTH = 254
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIALS = "@$!%*?&"
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PROFILE_TEXT_MIN_LENGTH = 2
PROFILE_TEXT_MAX_LENGTH = 100
SEMESTER_MIN = 1
SEMESTER_MAX = 12

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi override characters, then apply NFKC."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) > EMAIL_MAX_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("please provide a valid email")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("please provide a valid email")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("please provide a valid email")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("please provide a valid email")
    return normalized


def validate_password(value: str) -> str:
    """Enforce length bounds and the four required character classes."""
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in PASSWORD_SPECIALS for c in value)
    ):
        raise ValueError(
            "password must contain at least one uppercase letter, one lowercase "
            f"letter, one number and one special character ({PASSWORD_SPECIALS})"
        )
    return value


def validate_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("name must be a string")
    name = normalize_unicode(value).strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValueError(
            f"name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
        )
    if not all(c.isalpha() or c == " " for c in name):
        raise ValueError("name can only contain letters and spaces")
    return name


def validate_university(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("university must be a string")
    university = normalize_unicode(value).strip()
    _check_profile_length("university", university)
    if not all(c.isalpha() or c in " -." for c in university):
        raise ValueError("university name contains invalid characters")
    return university


def validate_course(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("course must be a string")
    course = normalize_unicode(value).strip()
    _check_profile_length("course", course)
    return course


def validate_semester(value: Any) -> int:
    # bool is an int subclass; "true" is not a semester
    if isinstance(value, bool):
        raise ValueError("semester must be an integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValueError("semester must be an integer")
    if not SEMESTER_MIN <= value <= SEMESTER_MAX:
        raise ValueError(f"semester must be between {SEMESTER_MIN} and {SEMESTER_MAX}")
    return value


def _check_profile_length(field_name: str, value: str) -> None:
    if not PROFILE_TEXT_MIN_LENGTH <= len(value) <= PROFILE_TEXT_MAX_LENGTH:
        raise ValueError(
            f"{field_name} must be between {PROFILE_TEXT_MIN_LENGTH} "
            f"and {PROFILE_TEXT_MAX_LENGTH} characters"
        )


PROFILE_VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    "name": validate_name,
    "university": validate_university,
    "course": validate_course,
    "semester": validate_semester,
}


@dataclass
class ValidationResult:
    ok: bool
    value: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


def _run(validators: Dict[str, Callable[[Any], Any]], payload: Dict[str, Any]) -> ValidationResult:
    value: Dict[str, Any] = {}
    errors: Dict[str, str] = {}
    for name, validator in validators.items():
        if name not in payload:
            continue
        try:
            value[name] = validator(payload[name])
        except ValueError as exc:
            errors[name] = str(exc)
    return ValidationResult(ok=not errors, value=value, errors=errors)


def validate_registration(
    *,
    name: Any,
    email: Any,
    password: Any,
    university: Any = None,
    course: Any = None,
    semester: Any = None,
    require_academic_profile: bool = False,
) -> ValidationResult:
    payload: Dict[str, Any] = {"name": name, "email": email, "password": password}
    for key, raw in (("university", university), ("course", course), ("semester", semester)):
        if raw is not None:
            payload[key] = raw
    result = _run(
        {
            "name": validate_name,
            "email": validate_email,
            "password": validate_password,
            "university": validate_university,
            "course": validate_course,
            "semester": validate_semester,
        },
        payload,
    )
    if require_academic_profile:
        for key in ("university", "course", "semester"):
            if key not in payload:
                result.errors[key] = f"{key} is required"
        result.ok = not result.errors
    return result


def validate_profile_update(payload: Dict[str, Optional[Any]]) -> ValidationResult:
    """Validate the subset of profile fields present in ``payload``.

    Unknown keys are reported as errors; ``None`` values are ignored.
    """
    present = {k: v for k, v in payload.items() if v is not None}
    result = _run(PROFILE_VALIDATORS, present)
    for key in present:
        if key not in PROFILE_VALIDATORS:
            result.errors[key] = "field cannot be updated"
    if not present:
        result.errors["profile"] = "no profile fields provided"
    result.ok = not result.errors
    return result

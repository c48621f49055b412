"""Tests for HS256 session credentials."""

import base64
import json
from datetime import timedelta

import pytest

from conftest import T0
from notehub.service.errors import InvalidTokenError, TokenExpiredError
from notehub.service.sessions import SessionIssuer, password_stamp

SECRET = "session-signing-secret-for-unit-tests-0123456789"


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def issuer(clock):
    return SessionIssuer(SECRET, ttl=timedelta(days=7), clock=clock)


def test_issue_then_verify_returns_claims(issuer):
    credential = issuer.issue("user-1", "student")
    assert credential.token_type == "bearer"
    assert credential.expires_at == T0 + timedelta(days=7)

    claims = issuer.verify(credential.token)
    assert claims.user_id == "user-1"
    assert claims.role == "student"
    assert claims.issued_at == T0
    assert claims.expires_at == T0 + timedelta(days=7)
    assert claims.jti


def test_each_credential_has_unique_jti(issuer):
    first = issuer.verify(issuer.issue("user-1", "student").token)
    second = issuer.verify(issuer.issue("user-1", "student").token)
    assert first.jti != second.jti


def test_expired_credential_rejected(issuer, clock):
    credential = issuer.issue("user-1", "admin")
    clock.advance(days=7)
    with pytest.raises(TokenExpiredError):
        issuer.verify(credential.token)


def test_credential_valid_until_just_before_expiry(issuer, clock):
    credential = issuer.issue("user-1", "admin")
    clock.advance(days=7, seconds=-1)
    assert issuer.verify(credential.token).role == "admin"


def test_tampered_payload_rejected(issuer):
    header, _, signature = issuer.issue("user-1", "student").token.split(".")
    forged = _b64(
        {
            "iss": "notehub",
            "aud": "notehub-clients",
            "sub": "user-1",
            "role": "admin",
            "iat": int(T0.timestamp()),
            "exp": int((T0 + timedelta(days=1)).timestamp()),
        }
    )
    with pytest.raises(InvalidTokenError):
        issuer.verify(f"{header}.{forged}.{signature}")


def test_other_secret_rejected(clock):
    token = SessionIssuer(SECRET, clock=clock).issue("user-1", "student").token
    other = SessionIssuer(SECRET + "-rotated", clock=clock)
    with pytest.raises(InvalidTokenError):
        other.verify(token)


def test_wrong_audience_rejected(clock):
    token = SessionIssuer(SECRET, audience="another-app", clock=clock).issue("u", "student").token
    with pytest.raises(InvalidTokenError):
        SessionIssuer(SECRET, clock=clock).verify(token)


def test_none_algorithm_rejected(issuer):
    _, payload, _ = issuer.issue("user-1", "student").token.split(".")
    header = _b64({"alg": "none", "typ": "JWT"})
    with pytest.raises(InvalidTokenError):
        issuer.verify(f"{header}.{payload}.")


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
def test_malformed_tokens_rejected(issuer, token):
    with pytest.raises(InvalidTokenError):
        issuer.verify(token)


def test_empty_secret_refused():
    with pytest.raises(ValueError):
        SessionIssuer("")


def test_password_stamp_is_carried_through(issuer):
    changed_at = T0 + timedelta(milliseconds=400)
    claims = issuer.verify(issuer.issue("user-1", "student", password_changed_at=changed_at).token)
    assert claims.password_stamp == password_stamp(changed_at)
    assert claims.password_stamp != password_stamp(T0 + timedelta(milliseconds=100))
    assert issuer.verify(issuer.issue("user-1", "student").token).password_stamp is None


def test_password_stamp_keeps_microseconds():
    assert password_stamp(T0 + timedelta(microseconds=1)) - password_stamp(T0) == 1
    assert password_stamp(None) is None


def test_non_integer_password_stamp_rejected(issuer, clock):
    header = _b64({"alg": "HS256", "typ": "JWT"})
    payload = _b64(
        {
            "iss": issuer.issuer,
            "aud": issuer.audience,
            "sub": "user-1",
            "role": "student",
            "iat": int(clock().timestamp()),
            "exp": int((clock() + timedelta(hours=1)).timestamp()),
            "pwd_at": "1.5",
        }
    )
    signature = issuer._sign(f"{header}.{payload}")
    with pytest.raises(InvalidTokenError):
        issuer.verify(f"{header}.{payload}.{signature}")

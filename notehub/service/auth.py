from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from notehub.config import Settings
from notehub.logging import get_logger
from notehub.service.email import (
    KIND_RESET,
    KIND_VERIFICATION,
    KIND_WELCOME,
    EmailSender,
)
from notehub.service.errors import (
    AccountLockedError,
    AccountSuspendedError,
    ConflictError,
    DeliveryFailed,
    DuplicateEmailError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    TokenInvalidOrExpiredError,
    UserNotFoundError,
    ValidationError,
)
from notehub.service.lockout import LockoutPolicy
from notehub.service.sessions import SessionCredential, SessionIssuer, password_stamp
from notehub.service.tokens import TokenService
from notehub.service.validation import (
    validate_email,
    validate_password,
    validate_profile_update,
    validate_registration,
)
from notehub.storage.errors import DuplicateEmail
from notehub.storage.models import (
    ROLE_ADMIN,
    STATUS_ACTIVE,
    STATUS_SUSPENDED,
    TokenKind,
    User,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_token_hash(self, kind: TokenKind, token_hash: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def set_token(
        self, user_id: str, kind: TokenKind, token_hash: str, expires_at: datetime
    ) -> Optional[User]: ...

    def clear_token(
        self, user_id: str, kind: TokenKind, *, expected_hash: Optional[str] = None
    ) -> bool: ...

    def complete_email_verification(
        self, user_id: str, token_hash: str, now: datetime
    ) -> Optional[User]: ...

    def complete_password_reset(
        self, user_id: str, token_hash: str, password_hash: str, now: datetime
    ) -> Optional[User]: ...

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        now: datetime,
        *,
        expected_hash: Optional[str] = None,
    ) -> Optional[User]: ...

    def record_failed_login(
        self, user_id: str, now: datetime, max_attempts: int, lock_until: datetime
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]: ...

    def set_account_status(
        self,
        user_id: str,
        status: str,
        now: datetime,
        *,
        expected: Optional[str] = None,
    ) -> Optional[User]: ...

    def promote_to_admin(self, user_id: str, now: datetime) -> Optional[User]: ...

    def update_profile(self, user_id: str, now: datetime, **fields) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class TokenDispatch:
    """Outcome of issuing a single-use token and handing it to email delivery.

    ``token`` is the raw value; it exists only here and in the email.
    """

    user: User
    token: str
    expires_at: datetime
    delivery_error: Optional[DeliveryFailed] = None

    @property
    def delivered(self) -> bool:
        return self.delivery_error is None


@dataclass
class LoginResult:
    user: User
    credential: SessionCredential


@dataclass(frozen=True)
class AccountStatus:
    verified: bool
    status: str

    @property
    def needs_verification(self) -> bool:
        return not self.verified


class AuthService:
    """Account lifecycle: registration, login, verification and password flows.

    Collaborators are passed in explicitly so tests can swap the email
    sender and the clock. Password hashing and email delivery are blocking
    and run in worker threads.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        email: EmailSender,
        *,
        tokens: Optional[TokenService] = None,
        lockout: Optional[LockoutPolicy] = None,
        sessions: Optional[SessionIssuer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email
        self._clock = clock
        self.tokens = tokens or TokenService.from_settings(settings, clock=clock)
        self.lockout = lockout or LockoutPolicy.from_settings(store, settings, clock=clock)
        self.sessions = sessions or SessionIssuer.from_settings(settings, clock=clock)
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # registration and verification
    async def register(
        self,
        name: str,
        email: str,
        password: str,
        *,
        university: Optional[str] = None,
        course: Optional[str] = None,
        semester: Optional[int] = None,
    ) -> TokenDispatch:
        if not self.settings.allow_signup:
            raise ForbiddenError("registration is currently disabled")
        result = validate_registration(
            name=name,
            email=email,
            password=password,
            university=university,
            course=course,
            semester=semester,
            require_academic_profile=self.settings.require_academic_profile,
        )
        if not result.ok:
            raise ValidationError("invalid registration data", detail={"fields": result.errors})
        fields = result.value
        if self.store.get_user_by_email(fields["email"]) is not None:
            raise DuplicateEmailError()

        password_hash = await self._hash_password(fields["password"])
        issued = self.tokens.issue(TokenKind.VERIFICATION)
        user = User.new(
            name=fields["name"],
            email=fields["email"],
            password_hash=password_hash,
            university=fields.get("university"),
            course=fields.get("course"),
            semester=fields.get("semester"),
            now=self._now(),
        )
        user.verification_token_hash = issued.token_hash
        user.verification_token_expires_at = issued.expires_at
        try:
            user = self.store.create_user(user)
        except DuplicateEmail as exc:
            # Lost a race with a concurrent registration for the same address
            raise DuplicateEmailError() from exc
        self.logger.info("user_registered", user_id=user.id)

        delivery_error = await self._deliver(
            user, KIND_VERIFICATION, {"name": user.name, "token": issued.raw}
        )
        return TokenDispatch(
            user=user,
            token=issued.raw,
            expires_at=issued.expires_at,
            delivery_error=delivery_error,
        )

    async def verify_email(self, raw_token: str) -> User:
        token_hash = self._consume_lookup(TokenKind.VERIFICATION, raw_token)
        user = self.store.get_user_by_token_hash(TokenKind.VERIFICATION, token_hash)
        if user is None:
            self.logger.warning("email_verification_invalid_token")
            raise TokenInvalidOrExpiredError()
        self.tokens.verify(
            TokenKind.VERIFICATION,
            raw_token,
            user.verification_token_hash,
            user.verification_token_expires_at,
        )
        updated = self.store.complete_email_verification(user.id, token_hash, self._now())
        if updated is None:
            # Consumed by a concurrent request between lookup and update
            raise TokenInvalidOrExpiredError()
        self.logger.info("email_verified", user_id=updated.id)

        welcome_error = await self._deliver(updated, KIND_WELCOME, {"name": updated.name})
        if welcome_error is not None:
            self.logger.warning("welcome_email_failed", user_id=updated.id)
        return updated

    async def resend_verification(self, email: str) -> TokenDispatch:
        user = self._require_user_by_email(email)
        if user.is_verified:
            raise ValidationError("email is already verified")
        issued = self.tokens.issue(TokenKind.VERIFICATION)
        updated = self.store.set_token(
            user.id, TokenKind.VERIFICATION, issued.token_hash, issued.expires_at
        )
        if updated is None:
            raise UserNotFoundError()
        self.logger.info("verification_token_reissued", user_id=user.id)
        delivery_error = await self._deliver(
            updated, KIND_VERIFICATION, {"name": updated.name, "token": issued.raw}
        )
        return TokenDispatch(
            user=updated,
            token=issued.raw,
            expires_at=issued.expires_at,
            delivery_error=delivery_error,
        )

    # login
    async def login(self, email: str, password: str) -> LoginResult:
        """Check credentials and issue a session credential.

        Failure order: unknown email, lockout, wrong password, unverified
        email, suspended account. Unknown emails still pay for a full argon2
        verification so response time does not reveal whether an account
        exists.
        """
        try:
            normalized: Optional[str] = validate_email(email)
        except ValueError:
            normalized = None
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            await self._burn_verification(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()

        lock = self.lockout.state(user)
        if lock.locked:
            self.logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(
                "account temporarily locked due to too many failed login attempts; "
                "please try again later",
                detail={
                    "locked_until": lock.until.isoformat() if lock.until else None,
                    "retry_after_seconds": lock.retry_after_seconds(self._now()),
                },
            )

        if not await self._verify_password(user.password_hash, password):
            state = self.lockout.record_failure(user)
            self.logger.info(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                attempts=state.attempts,
            )
            raise InvalidCredentialsError()

        if not user.is_verified:
            raise EmailNotVerifiedError()
        if user.account_status == STATUS_SUSPENDED:
            raise AccountSuspendedError()
        if user.account_status != STATUS_ACTIVE:
            raise EmailNotVerifiedError()

        updated = self.lockout.record_success(user) or user
        credential = self._issue_credential(updated)
        self.logger.info("login_succeeded", user_id=updated.id)
        return LoginResult(user=updated, credential=credential)

    async def logout(self, user_id: Optional[str] = None) -> None:
        # Credentials are stateless; the client discards its copy
        self.logger.info("logout", user_id=user_id)

    # password reset and change
    async def request_password_reset(self, email: str) -> TokenDispatch:
        """Issue a reset token and email it.

        Raises ``UserNotFoundError`` for unknown addresses; HTTP callers mask
        that outcome. When delivery fails the token is withdrawn again and
        ``DeliveryFailed`` is raised, because an undeliverable reset token
        should never stay valid.
        """
        user = self._require_user_by_email(email)
        issued = self.tokens.issue(TokenKind.RESET)
        updated = self.store.set_token(user.id, TokenKind.RESET, issued.token_hash, issued.expires_at)
        if updated is None:
            raise UserNotFoundError()
        self.logger.info("password_reset_requested", user_id=user.id)

        delivery_error = await self._deliver(
            updated, KIND_RESET, {"name": updated.name, "token": issued.raw}
        )
        if delivery_error is not None:
            self.store.clear_token(user.id, TokenKind.RESET, expected_hash=issued.token_hash)
            self.logger.warning("password_reset_token_withdrawn", user_id=user.id)
            raise delivery_error
        return TokenDispatch(user=updated, token=issued.raw, expires_at=issued.expires_at)

    async def reset_password(self, raw_token: str, new_password: str) -> User:
        token_hash = self._consume_lookup(TokenKind.RESET, raw_token)
        password = self._check_new_password(new_password)
        user = self.store.get_user_by_token_hash(TokenKind.RESET, token_hash)
        if user is None:
            self.logger.warning("password_reset_invalid_token")
            raise TokenInvalidOrExpiredError()
        self.tokens.verify(
            TokenKind.RESET, raw_token, user.reset_token_hash, user.reset_token_expires_at
        )
        password_hash = await self._hash_password(password)
        updated = self.store.complete_password_reset(
            user.id, token_hash, password_hash, self._now()
        )
        if updated is None:
            raise TokenInvalidOrExpiredError()
        self.logger.info("password_reset_completed", user_id=updated.id)
        return updated

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> LoginResult:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentialsError()
        if not await self._verify_password(user.password_hash, current_password):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError("current password is incorrect")
        password = self._check_new_password(new_password)
        password_hash = await self._hash_password(password)
        updated = self.store.update_password(
            user.id, password_hash, self._now(), expected_hash=user.password_hash
        )
        if updated is None:
            raise ConflictError("password was changed by another request; please retry")
        self.logger.info("password_changed", user_id=updated.id)
        return LoginResult(user=updated, credential=self._issue_credential(updated))

    # account queries
    async def get_account_status(self, email: str) -> AccountStatus:
        user = self._require_user_by_email(email)
        return AccountStatus(verified=user.is_verified, status=user.account_status)

    def verify_session_credential(self, raw: Optional[str]) -> AuthContext:
        """Resolve a bearer credential to the caller's identity.

        Beyond the signature and expiry checks this rejects credentials for
        deleted or suspended accounts, credentials whose role no longer
        matches the account, and (when configured) credentials not bound to
        the account's current password.
        """
        claims = self.sessions.verify(raw or "")
        user = self.store.get_user(claims.user_id)
        if user is None or user.role != claims.role:
            raise InvalidTokenError()
        if user.account_status == STATUS_SUSPENDED:
            raise AccountSuspendedError()
        if (
            self.settings.invalidate_sessions_on_password_change
            and claims.password_stamp != password_stamp(user.password_changed_at)
        ):
            raise InvalidTokenError("session invalidated by a password change")
        return AuthContext(user_id=user.id, role=user.role)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("user not found")
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=max(1, min(limit, 500)))

    async def update_profile(self, user_id: str, **fields: Any) -> User:
        result = validate_profile_update(fields)
        if not result.ok:
            raise ValidationError("invalid profile data", detail={"fields": result.errors})
        updated = self.store.update_profile(user_id, self._now(), **result.value)
        if updated is None:
            raise UserNotFoundError("user not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(result.value))
        return updated

    # administration
    async def set_account_status(
        self, user_id: str, status: str, *, actor_id: Optional[str] = None
    ) -> User:
        """Suspend or reactivate an account on behalf of an admin."""
        if status not in {STATUS_ACTIVE, STATUS_SUSPENDED}:
            raise ValidationError("status must be 'active' or 'suspended'")
        user = self.get_user(user_id)
        if status == STATUS_SUSPENDED and actor_id == user.id:
            raise ValidationError("admins cannot suspend their own account")
        if status == STATUS_ACTIVE and not user.is_verified:
            raise ValidationError("account must verify its email before activation")
        if user.account_status == status:
            return user
        updated = self.store.set_account_status(
            user.id, status, self._now(), expected=user.account_status
        )
        if updated is None:
            raise ConflictError("account status changed concurrently; please retry")
        self.logger.info(
            "account_status_changed",
            user_id=user.id,
            actor_id=actor_id,
            previous=user.account_status,
            status=status,
        )
        return updated

    async def create_admin(self, name: str, email: str, password: str) -> tuple[User, bool]:
        """Create a verified admin account, or promote an existing one.

        Promotion keeps the existing password; ``password`` only applies to
        a new account. Suspended accounts are never promoted.

        Returns the account and whether it was newly created.
        """
        existing = self.store.get_user_by_email(self._normalize_email(email))
        if existing is not None:
            if existing.account_status == STATUS_SUSPENDED:
                raise ValidationError("suspended accounts cannot be promoted; reactivate first")
            promoted = self.store.promote_to_admin(existing.id, self._now())
            if promoted is None:
                raise ConflictError("account status changed concurrently; please retry")
            self.logger.info(
                "admin_promoted",
                user_id=existing.id,
                previous_status=existing.account_status,
                kept_existing_credentials=True,
            )
            return promoted, False
        result = validate_registration(name=name, email=email, password=password)
        if not result.ok:
            raise ValidationError("invalid admin account data", detail={"fields": result.errors})
        password_hash = await self._hash_password(result.value["password"])
        user = User.new(
            name=result.value["name"],
            email=result.value["email"],
            password_hash=password_hash,
            role=ROLE_ADMIN,
            now=self._now(),
        )
        user.is_verified = True
        user.account_status = STATUS_ACTIVE
        try:
            created = self.store.create_user(user)
        except DuplicateEmail as exc:
            raise DuplicateEmailError() from exc
        self.logger.info("admin_created", user_id=created.id)
        return created, True

    # helpers
    def _issue_credential(self, user: User) -> SessionCredential:
        return self.sessions.issue(
            user.id, user.role, password_changed_at=user.password_changed_at
        )

    def _normalize_email(self, email: str) -> str:
        try:
            return validate_email(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"fields": {"email": str(exc)}}) from exc

    def _require_user_by_email(self, email: str) -> User:
        user = self.store.get_user_by_email(self._normalize_email(email))
        if user is None:
            raise UserNotFoundError()
        return user

    def _check_new_password(self, password: str) -> str:
        try:
            return validate_password(password)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"fields": {"password": str(exc)}}) from exc

    def _consume_lookup(self, kind: TokenKind, raw_token: str) -> str:
        if not raw_token or not isinstance(raw_token, str) or len(raw_token) > 256:
            raise TokenInvalidOrExpiredError()
        return self.tokens.hash(raw_token)

    async def _deliver(
        self, user: User, kind: str, payload: Mapping[str, Any]
    ) -> Optional[DeliveryFailed]:
        try:
            delivered = await asyncio.to_thread(self.email.send, user.email, kind, payload)
        except Exception as exc:
            # The sender is an external collaborator; any failure means "not delivered"
            self.logger.error(
                "email_delivery_error", user_id=user.id, kind=kind, error=str(exc)
            )
            delivered = False
        if delivered:
            return None
        self.logger.warning("email_delivery_failed", user_id=user.id, kind=kind)
        return DeliveryFailed(kind=kind)

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def _verify_password(self, stored_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._verify_password_sync, stored_hash, password)

    def _verify_password_sync(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (VerificationError, InvalidHash):
            return False

    async def _burn_verification(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self._pwd_hasher.hash, secrets.token_urlsafe(16)
            )
        await self._verify_password(self._dummy_hash, password or "")

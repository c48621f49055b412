from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from notehub.api.schemas import (
    AccountStatusResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionResponse,
    UpdateProfileRequest,
    UserListResponse,
    UserResponse,
)
from notehub.logging import get_logger, redact_email
from notehub.service.auth import AuthContext, LoginResult
from notehub.service.errors import UserNotFoundError
from notehub.service.runtime import get_runtime
from notehub.storage.models import STATUS_ACTIVE, STATUS_SUSPENDED

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_RESET_REQUESTED_MESSAGE = (
    "If an account exists for this email, a password reset link has been sent."
)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(authorization: Optional[str]) -> str:
    scheme, _, credential = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return credential.strip()


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.verify_session_credential(_extract_bearer(authorization))


async def get_admin_user(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _session_response(result: LoginResult) -> SessionResponse:
    return SessionResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.credential.token,
        token_type=result.credential.token_type,
        expires_at=result.credential.expires_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a student account in the pending state and send the verification email.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    dispatch = await runtime.auth.register(
        body.name,
        body.email,
        body.password,
        university=body.university,
        course=body.course,
        semester=body.semester,
    )
    warning = None
    if not dispatch.delivered:
        warning = "verification email could not be sent; request a new one to finish signing up"
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=UserResponse.from_user(dispatch.user),
            message="Registration successful. Please check your email to verify your account.",
            warning=warning,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for a bearer session credential.

    Raises:
        401: If the credentials are invalid
        403: If the email is unverified or the account suspended
        423: If the account is locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_session_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(token)
    return Envelope(
        status="ok",
        data={
            "message": "Email verified successfully. You can now log in.",
            "user": UserResponse.from_user(user),
        },
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    dispatch = await runtime.auth.resend_verification(body.email)
    if dispatch.delivery_error is not None:
        raise dispatch.delivery_error
    return Envelope(status="ok", data={"message": "Verification email sent."})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest):
    """Send a password reset link.

    The response is the same whether or not the email belongs to an account.
    """
    runtime = get_runtime()
    try:
        await runtime.auth.request_password_reset(body.email)
    except UserNotFoundError:
        logger.info("password_reset_unknown_email", address=redact_email(body.email))
    return Envelope(status="ok", data={"message": _RESET_REQUESTED_MESSAGE})


@router.put("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    user = await runtime.auth.reset_password(token, body.password)
    return Envelope(
        status="ok",
        data={
            "message": "Password reset successful. You can now log in with your new password.",
            "user": UserResponse.from_user(user),
        },
    )


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_current_user),
):
    """Change the caller's password and return a fresh credential.

    Credentials issued before the change stop working when session
    invalidation on password change is enabled.
    """
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=_session_response(result))


@router.get("/auth/account-status/{email}", response_model=Envelope, tags=["auth"])
async def account_status(email: str = Path(..., max_length=320)):
    runtime = get_runtime()
    status = await runtime.auth.get_account_status(email)
    return Envelope(
        status="ok",
        data=AccountStatusResponse(
            verified=status.verified,
            status=status.status,
            needs_verification=status.needs_verification,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(
    body: UpdateProfileRequest,
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(principal.user_id, **body.changes())
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    items = [UserResponse.from_user(u) for u in users]
    return Envelope(status="ok", data=UserListResponse(items=items, count=len(items)))


@router.post("/admin/users/{user_id}/suspend", response_model=Envelope, tags=["admin"])
async def admin_suspend_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_account_status(
        user_id, STATUS_SUSPENDED, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/reactivate", response_model=Envelope, tags=["admin"])
async def admin_reactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_account_status(
        user_id, STATUS_ACTIVE, actor_id=principal.user_id
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))

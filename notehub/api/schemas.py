from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from notehub.service.validation import (
    validate_course,
    validate_email,
    validate_name,
    validate_password,
    validate_semester,
    validate_university,
)
from notehub.storage.models import User

# Stable error codes mapped from service and HTTP failures
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_token",
    "token_expired",
    "email_not_verified",
    "account_suspended",
    "account_locked",
    "delivery_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    university: Optional[str] = Field(default=None, max_length=200)
    course: Optional[str] = Field(default=None, max_length=200)
    semester: Optional[int] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password(value)

    @field_validator("university")
    @classmethod
    def _validate_university(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else validate_university(value)

    @field_validator("course")
    @classmethod
    def _validate_course(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else validate_course(value)

    @field_validator("semester", mode="before")
    @classmethod
    def _validate_semester(cls, value: Any) -> Optional[int]:
        return None if value is None else validate_semester(value)


class LoginRequest(BaseModel):
    # Not format-checked: a malformed address is just another failed login
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)


class EmailRequest(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return validate_email(value)


class ResetPasswordRequest(BaseModel):
    password: str = Field(..., max_length=1024)
    confirm_password: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("passwords do not match")
        return self


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., max_length=1024)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password(value)

    @model_validator(mode="after")
    def _must_differ(self):
        if self.current_password == self.new_password:
            raise ValueError("new password must be different from the current password")
        return self


class UpdateProfileRequest(BaseModel):
    # Unknown keys are rejected here rather than silently dropped
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=200)
    university: Optional[str] = Field(default=None, max_length=200)
    course: Optional[str] = Field(default=None, max_length=200)
    semester: Optional[int] = None

    @field_validator("semester", mode="before")
    @classmethod
    def _coerce_semester(cls, value: Any) -> Optional[int]:
        return None if value is None else validate_semester(value)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    is_verified: bool
    account_status: str
    university: Optional[str] = None
    course: Optional[str] = None
    semester: Optional[int] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            is_verified=user.is_verified,
            account_status=user.account_status,
            university=user.university,
            course=user.course,
            semester=user.semester,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class RegisterResponse(BaseModel):
    user: UserResponse
    message: str
    warning: Optional[str] = None


class AccountStatusResponse(BaseModel):
    verified: bool
    status: str
    needs_verification: bool


class UserListResponse(BaseModel):
    items: List[UserResponse]
    count: int

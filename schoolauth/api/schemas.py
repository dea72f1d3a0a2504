from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from schoolauth.storage.models import Identity, Role

# Zero-width joiners/spaces, BOM and the bidi embedding/isolate controls
_INVISIBLE_CHARS = re.compile("[\u200b-\u200d\ufeff\u202a-\u202e\u2066-\u2069]")

_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{3,64}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

ERROR_CODES = frozenset(
    {
        "unauthorized",
        "invalid_token",
        "forbidden",
        "email_not_verified",
        "invalid_tenant",
        "not_found",
        "account_locked",
        "validation_error",
        "conflict",
        "server_error",
    }
)


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", _INVISIBLE_CHARS.sub("", value))


def _validate_email(value: str) -> str:
    """Lower-case and normalize ``value``; reject anything that is not user@host.tld."""
    address = _normalize_unicode(value.strip().lower())
    local, sep, domain = address.partition("@")
    labels = domain.split(".")
    if (
        not sep
        or len(address) > 254
        or not _EMAIL_LOCAL_PART.match(local)
        or len(labels) < 2
        or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels)
    ):
        raise ValueError("not a valid email address")
    return address


def _validate_username(value: str) -> str:
    username = _normalize_unicode(value.strip())
    if not _USERNAME_PATTERN.match(username):
        raise ValueError(
            "username needs 3-64 letters, digits, dots, underscores or hyphens"
        )
    return username


def _validate_password_strength(value: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"password length must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
        )
    return value


class ErrorBody(BaseModel):
    code: str = Field(..., description="One of ERROR_CODES")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Wrapper shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _EmailLookup(BaseModel):
    email: str
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _validate_email(value)


class _NewPassword(BaseModel):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    tenant_id: Optional[str] = Field(default=None, max_length=128)


class RegisterRequest(BaseModel):
    """Self-service sign-up; the account stays unverified until the emailed link is used."""

    username: str
    email: str
    password: str
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    role: str = Field(default=Role.STUDENT.value, max_length=32)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ForgotPasswordRequest(_EmailLookup):
    pass


class ResendVerificationRequest(_EmailLookup):
    pass


class PasswordResetConfirm(_NewPassword):
    token: str = Field(..., max_length=256)


class PasswordChangeRequest(_NewPassword):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class UserSummary(BaseModel):
    id: str
    tenant_id: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserSummary":
        return cls(
            id=identity.id,
            tenant_id=identity.tenant_id,
            username=identity.username,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            role=identity.role.value,
        )


class AuthTokensResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(..., description="Access-token lifetime in seconds")
    user: UserSummary


class TokenValidationResponse(BaseModel):
    valid: bool = True
    user_id: str
    tenant_id: str
    role: str

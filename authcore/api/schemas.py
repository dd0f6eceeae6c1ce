from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authcore.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "upstream_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+")
_EMAIL_DOMAIN_LABEL = re.compile(r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.fullmatch(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.fullmatch(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"[A-Za-z0-9._-]{3,30}")


def _validate_username(value: str) -> str:
    value = value.strip()
    if not _USERNAME_PATTERN.fullmatch(value):
        raise ValueError(
            "username must be 3-30 characters of letters, digits, dots, underscores or hyphens"
        )
    return value


_PASSWORD_SYMBOLS = "@$!%*?&"
_PASSWORD_PATTERN = re.compile(r"[A-Za-z0-9@$!%*?&]{8,72}")


def _validate_password_strength(value: str) -> str:
    """8-72 characters with a lower-case letter, an upper-case letter, a digit and a symbol."""
    if not _PASSWORD_PATTERN.fullmatch(value):
        raise ValueError(
            f"password must be 8-72 characters of letters, digits and {_PASSWORD_SYMBOLS}"
        )
    if not (
        any(c.islower() for c in value)
        and any(c.isupper() for c in value)
        and any(c.isdigit() for c in value)
        and any(c in _PASSWORD_SYMBOLS for c in value)
    ):
        raise ValueError(
            "password needs a lower-case letter, an upper-case letter, a digit and a symbol"
        )
    return value


_CODE_PATTERN = re.compile(r"[0-9]{6}")


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=128)
    username: str = Field(..., max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)


class RegisterResponse(BaseModel):
    user_id: str


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(BaseModel):
    type: Literal["SESSION", "TEMP"]
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    temp_token: Optional[str] = None
    expires_in: Optional[int] = None


class CodeRequest(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if not _CODE_PATTERN.fullmatch(value):
            raise ValueError("code must be 6 digits")
        return value


class TwoFactorSetupResponse(BaseModel):
    otpauth_url: str
    qr_payload: str
    secret: str


class TwoFactorStatusResponse(BaseModel):
    enabled: bool


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=256)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeResponse(BaseModel):
    status: Literal["changed"] = "changed"


class VerifyResponse(BaseModel):
    user_id: str
    email: str
    username: str
    expires_at: datetime


class SessionInfo(BaseModel):
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


class SessionListResponse(BaseModel):
    sessions: List[SessionInfo]


class OAuthCallbackResponse(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    temp_token: Optional[str] = None
    needs_username: bool = False


class SetUsernameRequest(BaseModel):
    temp_token: str = Field(..., min_length=1, max_length=4096)
    username: str = Field(..., max_length=64)

    @field_validator("username")
    @classmethod
    def _validate_set_username(cls, value: str) -> str:
        return _validate_username(value)

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_TOKEN_LENGTH = 4096
MAX_DEVICE_LENGTH = 255
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def _clean_text(value: str) -> str:
    """NFKC-normalize and strip invisible format characters (zero-width, bidi controls)."""

    visible = "".join(c for c in value if unicodedata.category(c) != "Cf")
    return unicodedata.normalize("NFKC", visible)


_ERROR_CODES = frozenset(
    {
        "validation_error",
        "wrong_auth_method",
        "federated_claims_incomplete",
        "unauthorized",
        "invalid_credentials",
        "invalid_federated_token",
        "refresh_reuse_or_invalid",
        "refresh_expired",
        "not_found",
        "already_exists",
        "conflict",
        "server_error",
        "session_persist_failed",
        "service_unavailable",
    }
)


class ErrorBody(BaseModel):
    """Error payload; ``code`` is one of a closed set clients can branch on."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in _ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    """Wrapper shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# RFC 5321 limits: 64 octet local part, 63 octet labels, 254 overall
_EMAIL_RE = re.compile(
    r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}"
    r"@(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)


def _email(value: str) -> str:
    address = _clean_text(value.strip().lower())
    if len(address) > 254 or not _EMAIL_RE.match(address):
        raise ValueError("invalid email address")
    return address


def _new_password(value: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
        )
    return value


class RegisterRequest(BaseModel):
    email: str
    name: str = Field(..., min_length=1, max_length=255)
    password: str
    device: Optional[str] = Field(default=None, max_length=MAX_DEVICE_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _new_password(value)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        name = _clean_text(value).strip()
        if not name:
            raise ValueError("name must not be blank")
        return name


class LoginRequest(BaseModel):
    email: str
    # existing accounts may predate the length rule, so only bound it here
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    device: Optional[str] = Field(default=None, max_length=MAX_DEVICE_LENGTH)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _email(value)


class GoogleLoginRequest(BaseModel):
    id_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    device: Optional[str] = Field(default=None, max_length=MAX_DEVICE_LENGTH)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class IdentityResponse(BaseModel):
    """Public view of an account; never carries the password hash."""

    id: str
    email: str
    name: str
    auth_provider: str
    federated: bool
    avatar_url: Optional[str] = None
    last_login_at: datetime
    created_at: datetime

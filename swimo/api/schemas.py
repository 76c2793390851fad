from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error payload carried by every failed response."""

    code: str = Field(..., description="Stable machine-readable error code")
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# Zero-width and bidi override characters are dropped before NFKC normalization
_INVISIBLE = {"\u200b", "\u200c", "\u200d", "\ufeff"} | {
    chr(c) for c in [*range(0x202A, 0x202F), *range(0x2066, 0x206A)]
}
_EMAIL_PATTERN = re.compile(
    r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}"
    r"@(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


def _normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    cleaned = "".join(c for c in value.strip() if c not in _INVISIBLE)
    normalized = unicodedata.normalize("NFKC", cleaned).lower()
    if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _check_password_length(value: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
        )
    return value


class SignUpRequest(BaseModel):
    email: str
    password: str
    confirm_password: str
    name: str = Field(..., max_length=128)
    weight_kg: float = Field(..., gt=0, le=1000)
    height_cm: float = Field(..., gt=0, le=400)
    age_years: int = Field(..., gt=0, le=150)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _check_password_length(value)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name is required")
        return value

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class SignUpResponse(BaseModel):
    account_id: str
    email: str
    created_at: datetime


class SignInRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return _normalize_email(value)


class GuestSignInRequest(BaseModel):
    weight_kg: Optional[float] = Field(default=None, ge=0, le=1000)
    height_cm: Optional[float] = Field(default=None, ge=0, le=400)
    age_years: Optional[int] = Field(default=None, ge=0, le=150)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class TokenPairResponse(BaseModel):
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in_ms: int
    expires_at: datetime


class SignInResponse(BaseModel):
    account_id: str
    user_id: str
    email: str
    name: str
    weight_kg: float
    height_cm: float
    age_years: int
    tokens: TokenPairResponse


class GuestSignInResponse(BaseModel):
    name: str = "Guest"
    weight_kg: Optional[float] = None
    height_cm: Optional[float] = None
    age_years: Optional[int] = None
    tokens: TokenPairResponse


class ClaimsResponse(BaseModel):
    session_id: str
    kind: str
    account_id: Optional[str] = None
    user_id: Optional[str] = None
    issued_at: int
    expires_at: int

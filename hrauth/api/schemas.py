from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from hrauth.storage.models import OtpChannel, TwoFactorMethod

MAX_IDENTIFIER_LENGTH = 255
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 255


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    """Email address or phone number plus password."""

    identifier: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip())
        if not normalized:
            raise ValueError("identifier must not be blank")
        return normalized


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime


class LoginResponse(BaseModel):
    requires_2fa: bool
    challenge_id: Optional[str] = None
    channel: Optional[OtpChannel] = None
    tokens: Optional[TokenPairResponse] = None


class OtpVerifyRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=4, max_length=10)


class OtpResendRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=128)


class ChallengeResponse(BaseModel):
    challenge_id: str
    channel: Optional[OtpChannel] = None


class PasswordForgotRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetValidateRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=4, max_length=20)


class PasswordResetRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=4, max_length=20)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class DeliveryAttemptResponse(BaseModel):
    channel: str
    kind: str
    delivered: bool
    error: Optional[str] = None


class Enable2faSendRequest(BaseModel):
    channel: OtpChannel


class Enable2faConfirmRequest(BaseModel):
    challenge_id: str = Field(..., min_length=1, max_length=128)
    code: str = Field(..., min_length=4, max_length=10)


class Disable2faRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class TwoFactorStatusResponse(BaseModel):
    two_factor_enabled: bool
    two_factor_method: Optional[TwoFactorMethod] = None
    tokens: Optional[TokenPairResponse] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ProfileResponse(BaseModel):
    id: int
    email: str
    phone: Optional[str] = None
    role: str
    two_factor_enabled: bool
    two_factor_method: Optional[TwoFactorMethod] = None
    last_login_at: Optional[datetime] = None

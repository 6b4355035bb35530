from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from gatekeep.storage.models import UserRole

PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
TWO_FACTOR_CODE_PATTERN = re.compile(r"^[0-9]{6}$")

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "expired",
    "validation_error",
    "conflict",
    "server_error",
})


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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _min_password_length(info: ValidationInfo) -> int:
    context = info.context or {}
    return context.get("password_min_length", PASSWORD_MIN_LENGTH)


def _validate_password_length(value: str, min_length: int = PASSWORD_MIN_LENGTH) -> str:
    if len(value) < min_length:
        raise ValueError(f"Minimum of {min_length} characters required")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


# Validation schemas applied by the boundary actions. A failure here becomes an
# "Invalid fields!" style result, never an exception.


class LoginSchema(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    code: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        value = value.strip()
        if not TWO_FACTOR_CODE_PATTERN.match(value):
            raise ValueError("code must be 6 digits")
        return value


class ResetSchema(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class NewPasswordSchema(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str, info: ValidationInfo) -> str:
        return _validate_password_length(value, _min_password_length(info))


class SettingsSchema(BaseModel):
    name: Optional[str] = Field(default=None, max_length=128)
    is_two_factor_enabled: Optional[bool] = None
    role: Optional[UserRole] = None
    email: Optional[str] = None
    password: Optional[str] = None
    new_password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_settings_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)

    @field_validator("password", "new_password")
    @classmethod
    def _validate_passwords(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return None
        return _validate_password_length(value, _min_password_length(info))

    @model_validator(mode="after")
    def _require_password_pair(self):
        if self.password and not self.new_password:
            raise ValueError("New password is required!")
        if self.new_password and not self.password:
            raise ValueError("Password is required!")
        return self


# Request bodies accepted by the HTTP routes. They check shape only; the
# actions above apply the field rules so the API reports the same messages.


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    code: Optional[str] = Field(default=None, max_length=16)


class ResetRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=320)


class NewPasswordRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    password: str = Field(..., max_length=1024)
    token: Optional[str] = Field(default=None, max_length=256)


class NewVerificationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: Optional[str] = Field(default=None, max_length=256)


class SettingsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=1024)
    is_two_factor_enabled: Optional[bool] = None
    role: Optional[str] = Field(default=None, max_length=16)
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)
    new_password: Optional[str] = Field(default=None, max_length=1024)


class SessionResponse(BaseModel):
    session_token: str
    user: dict

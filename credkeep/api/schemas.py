from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PASSWORD_LENGTH = 128
MIN_PASSWORD_LENGTH = 8
MAX_EMAIL_LENGTH = 254

# invisible code points that can make two addresses render the same
_INVISIBLE = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", "".join(c for c in value if c not in _INVISIBLE))


ERROR_CODES = frozenset(
    {
        # credential lifecycle
        "password_mismatch",
        "invalid_credentials",
        "user_already_exists",
        "invalid_token",
        "token_expired",
        "invalid_tfa_code",
        "tfa_not_initiated",
        "user_not_found",
        # transport
        "validation_error",
        "unauthorized",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """``error`` member of the envelope; ``code`` is the stable part clients branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value in ERROR_CODES:
            return value
        raise ValueError(f"unknown error code {value!r}")


class Envelope(BaseModel):
    """Wrapper for error responses. Successful calls return their body bare."""

    status: Literal["ok", "error"]
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_LOCAL_PART = re.compile(r"[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}")
_DOMAIN_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
_DOMAIN = re.compile(rf"(?:{_DOMAIN_LABEL}\.)+{_DOMAIN_LABEL}")


def normalize_email(value: str) -> str:
    """Lower-case and NFKC-normalize an address, raising ValueError if it is malformed."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    address = _normalize_unicode(value.strip().lower())
    if not 3 <= len(address) <= MAX_EMAIL_LENGTH:
        raise ValueError(f"email must be between 3 and {MAX_EMAIL_LENGTH} characters")
    local, _, domain = address.rpartition("@")
    if not (_LOCAL_PART.fullmatch(local) and _DOMAIN.fullmatch(domain)):
        raise ValueError("invalid email address")
    return address


def check_password_length(value: str) -> str:
    if not MIN_PASSWORD_LENGTH <= len(value) <= MAX_PASSWORD_LENGTH:
        raise ValueError(
            f"password must be {MIN_PASSWORD_LENGTH} to {MAX_PASSWORD_LENGTH} characters"
        )
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str
    password: str
    confirm_password: str = Field(..., alias="confirmPassword", max_length=MAX_PASSWORD_LENGTH)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return check_password_length(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    tfa_code: Optional[str] = Field(default=None, alias="tfaCode", max_length=10)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return normalize_email(value)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        # malformed addresses get the same generic answer as unknown ones
        return _normalize_unicode(value.strip().lower())


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword", max_length=MAX_PASSWORD_LENGTH)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return check_password_length(value)


class VerifyTfaRequest(BaseModel):
    code: str = Field(..., max_length=10)


class MessageResponse(BaseModel):
    message: str


class AuthResponse(_CamelModel):
    message: str
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    roles: Optional[List[str]] = None
    tfa_enabled: bool = Field(default=False, alias="tfaEnabled")
    tfa_required: bool = Field(default=False, alias="tfaRequired")


class TfaSetupResponse(_CamelModel):
    secret: str
    qr_code_uri: str = Field(..., alias="qrCodeUri")
    otpauth_uri: str = Field(..., alias="otpauthUri")
    message: str

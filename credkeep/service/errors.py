from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for credential errors mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. Messages are safe to show to end users; store
    and infrastructure failures never surface through this hierarchy.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class PasswordMismatch(ValidationError):
    status_code = 400
    error_code = "password_mismatch"
    default_message = "Passwords do not match"


class InvalidCredentials(ServiceError):
    status_code = 401
    error_code = "invalid_credentials"
    default_message = "Invalid email or password"


class AuthenticationRequired(ServiceError):
    """No usable access token on a protected route (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "You need to login to access this resource"


class UserAlreadyExists(ServiceError):
    status_code = 409
    error_code = "user_already_exists"
    default_message = "Email is already registered"


class InvalidToken(ServiceError):
    """Token is malformed, unknown or already consumed."""
    status_code = 400
    error_code = "invalid_token"
    default_message = "Invalid token"


class TokenExpired(ServiceError):
    status_code = 400
    error_code = "token_expired"
    default_message = "Token has expired"


class InvalidTfaCode(ServiceError):
    status_code = 401
    error_code = "invalid_tfa_code"
    default_message = "Invalid 2FA code"


class TfaNotInitiated(ServiceError):
    status_code = 400
    error_code = "tfa_not_initiated"
    default_message = "TFA setup not initiated"


class UserNotFound(ServiceError):
    status_code = 404
    error_code = "user_not_found"
    default_message = "User not found"


class RateLimited(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests, slow down"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PasswordMismatch",
    "InvalidCredentials",
    "AuthenticationRequired",
    "UserAlreadyExists",
    "InvalidToken",
    "TokenExpired",
    "InvalidTfaCode",
    "TfaNotInitiated",
    "UserNotFound",
    "RateLimited",
]

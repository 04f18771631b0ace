from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from credkeep.api.schemas import (
    AuthResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TfaSetupResponse,
    VerifyTfaRequest,
)
from credkeep.logging import get_logger
from credkeep.service.auth import AuthContext, AuthResult
from credkeep.service.errors import (
    AuthenticationRequired,
    InvalidToken,
    RateLimited,
    TokenExpired,
)
from credkeep.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth")

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
ACCESS_COOKIE_PATH = "/"
REFRESH_COOKIE_PATH = "/api/auth/refresh"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise RateLimited (429) once ``key`` exhausts its bucket."""
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.info("rate_limit_exceeded", bucket=key.split(":", 1)[0], retry_after=reset_seconds)
        raise RateLimited(detail={"retry_after": reset_seconds})


def _cookie_flags() -> dict:
    settings = get_runtime().settings
    # samesite None leaves the attribute off the Set-Cookie header
    return {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite,
    }


def _set_access_cookie(response: Response, token: str, *, max_age: int) -> None:
    response.set_cookie(
        ACCESS_COOKIE, token, max_age=max_age, path=ACCESS_COOKIE_PATH, **_cookie_flags()
    )


def _set_refresh_cookie(response: Response, token: str, *, max_age: int) -> None:
    response.set_cookie(
        REFRESH_COOKIE, token, max_age=max_age, path=REFRESH_COOKIE_PATH, **_cookie_flags()
    )


def _clear_auth_cookies(response: Response) -> None:
    # an empty value with Max-Age 0 on the original path expires each cookie
    _set_access_cookie(response, "", max_age=0)
    _set_refresh_cookie(response, "", max_age=0)


def _apply_auth_cookies(response: Response, result: AuthResult) -> None:
    tokens = get_runtime().auth.tokens
    if result.access_token:
        _set_access_cookie(response, result.access_token, max_age=tokens.access_cookie_max_age)
    if result.refresh_token:
        _set_refresh_cookie(response, result.refresh_token, max_age=tokens.refresh_cookie_max_age)


def _auth_response(result: AuthResult) -> AuthResponse:
    user = result.user
    if result.tfa_required:
        return AuthResponse(
            message=result.message,
            email=user.email if user else None,
            tfa_enabled=True,
            tfa_required=True,
        )
    return AuthResponse(
        message=result.message,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        roles=user.role_names,
        tfa_enabled=user.tfa_enabled,
        tfa_required=False,
    )


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    """Resolve the caller from a Bearer header or the access-token cookie."""
    token = None
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            token = credentials.strip()
    if token is None:
        token = access_cookie
    if not token:
        raise AuthenticationRequired()
    runtime = get_runtime()
    try:
        return runtime.auth.authenticate_access_token(token)
    except (InvalidToken, TokenExpired) as exc:
        logger.info("access_token_rejected", reason=exc.error_code)
        raise AuthenticationRequired()


@router.post("/register", response_model=MessageResponse, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and send the email verification link.

    Raises:
        400: passwords do not match
        409: email already registered
        429: too many registrations from this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    message = await runtime.auth.register(
        body.email,
        body.password,
        body.confirm_password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return MessageResponse(message=message)


@router.post("/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password, plus a TOTP code when 2FA is on.

    When 2FA is enabled and no code is supplied the response carries
    ``tfaRequired: true`` and no cookies are set.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(
        body.email, body.password, body.tfa_code, remember_me=body.remember_me
    )
    _apply_auth_cookies(response, result)
    return _auth_response(result)


@router.post("/logout", response_model=MessageResponse, tags=["auth"])
async def logout(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    message = await runtime.auth.logout(refresh_token)
    _clear_auth_cookies(response)
    return MessageResponse(message=message)


@router.post("/refresh", response_model=AuthResponse, tags=["auth"])
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    result = await runtime.auth.refresh(refresh_token)
    _apply_auth_cookies(response, result)
    return _auth_response(result)


@router.get("/verify-email", response_model=MessageResponse, tags=["auth"])
async def verify_email(token: Optional[str] = Query(None, max_length=256)):
    runtime = get_runtime()
    message = await runtime.auth.verify_email(token)
    return MessageResponse(message=message)


@router.post("/forgot-password", response_model=MessageResponse, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Always answers with the same message whether or not the account exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:request:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    message = await runtime.auth.forgot_password(body.email)
    return MessageResponse(message=message)


@router.post("/reset-password", response_model=MessageResponse, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    # slows token guessing
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    message = await runtime.auth.reset_password(
        body.token, body.new_password, body.confirm_password
    )
    return MessageResponse(message=message)


@router.get("/me", response_model=AuthResponse, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.current_user(principal.email)
    return _auth_response(result)


@router.post("/tfa/enable", response_model=TfaSetupResponse, tags=["tfa"])
async def enable_tfa(principal: AuthContext = Depends(get_principal)):
    """Provision a new TOTP secret; 2FA stays off until /tfa/verify succeeds."""
    runtime = get_runtime()
    setup = await runtime.auth.enable_tfa(principal.email)
    return TfaSetupResponse(
        secret=setup.secret,
        qr_code_uri=setup.qr_code_uri,
        otpauth_uri=setup.otpauth_uri,
        message=setup.message,
    )


@router.post("/tfa/verify", response_model=MessageResponse, tags=["tfa"])
async def verify_tfa(body: VerifyTfaRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    message = await runtime.auth.verify_tfa(principal.email, body.code)
    return MessageResponse(message=message)


@router.post("/tfa/disable", response_model=MessageResponse, tags=["tfa"])
async def disable_tfa(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    message = await runtime.auth.disable_tfa(principal.email)
    return MessageResponse(message=message)

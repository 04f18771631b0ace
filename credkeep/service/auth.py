from __future__ import annotations

import asyncio
import functools
import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from credkeep.config import Settings
from credkeep.logging import get_logger
from credkeep.service.email import (
    NotificationSink,
    password_reset_email,
    verification_email,
)
from credkeep.service.errors import (
    InvalidCredentials,
    InvalidTfaCode,
    InvalidToken,
    PasswordMismatch,
    TfaNotInitiated,
    TokenExpired,
    UserAlreadyExists,
    UserNotFound,
)
from credkeep.service.tfa import TotpVerifier
from credkeep.service.tokens import TokenIssuer
from credkeep.storage.errors import ConstraintViolation
from credkeep.storage.models import (
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    Role,
    User,
)
from credkeep.storage.redis_cache import RedisCache

logger = get_logger(__name__)

REGISTERED_MESSAGE = "Registration successful! Please check your email to verify your account."
TFA_REQUIRED_MESSAGE = "2FA code required"
LOGIN_MESSAGE = "Login successful"
LOGOUT_MESSAGE = "Logout successful"
REFRESHED_MESSAGE = "Token refreshed"
EMAIL_VERIFIED_MESSAGE = "Email verified successfully!"
FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with that email, a password reset link has been sent."
)
PASSWORD_RESET_MESSAGE = "Password reset successfully!"
USER_INFO_MESSAGE = "User info"
TFA_SETUP_MESSAGE = "Scan the QR code with your authenticator app, then verify with a code"
TFA_ENABLED_MESSAGE = "Two-factor authentication enabled successfully!"
TFA_DISABLED_MESSAGE = "Two-factor authentication disabled"


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        roles: Optional[Iterable[Role]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def set_tfa_state(
        self, user_id: str, *, secret: Optional[str], enabled: bool
    ) -> Optional[User]: ...

    def activate_tfa(self, user_id: str, expected_secret: str) -> Optional[User]: ...

    def set_user_roles(self, user_id: str, roles: Iterable[Role]) -> Optional[User]: ...

    def save_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_refresh_tokens_for_user(self, user_id: str) -> int: ...

    def rotate_refresh_token(self, old_token: str, new_record: RefreshToken) -> bool: ...

    def save_password_reset_token(self, record: PasswordResetToken) -> PasswordResetToken: ...

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def consume_password_reset_token(
        self,
        token: str,
        password_hash: str,
        password_algo: str = "argon2id",
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def save_email_verification_token(
        self, record: EmailVerificationToken
    ) -> EmailVerificationToken: ...

    def get_email_verification_token(self, token: str) -> Optional[EmailVerificationToken]: ...

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> Dict[str, int]: ...


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_CHECKED = "credentials_checked"
    SECOND_FACTOR_PENDING = "second_factor_pending"
    AUTHENTICATED = "authenticated"


@dataclass
class AuthContext:
    """Identity proven by a valid access token."""

    email: str
    token_id: Optional[str] = None
    expires_at: Optional[int] = None


@dataclass
class AuthResult:
    message: str
    state: AuthState
    user: Optional[User] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def tfa_required(self) -> bool:
        return self.state == AuthState.SECOND_FACTOR_PENDING


@dataclass
class TfaSetup:
    secret: str
    otpauth_uri: str
    # PNG data URI of the QR code, ready for an <img src>
    qr_code_uri: str
    message: str = TFA_SETUP_MESSAGE


@dataclass
class _AttemptWindow:
    count: int
    started: datetime
    locked_until: Optional[datetime] = None


class AuthService:
    """Credential checks, token issuance and the second-factor gate.

    Callers pass identity explicitly: login-style calls take an email and
    password, session-bound calls take the email of an ``AuthContext``.
    Tokens are only minted once the state machine reaches AUTHENTICATED.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        notifier: NotificationSink,
        cache: Optional[RedisCache] = None,
        tokens: Optional[TokenIssuer] = None,
        totp: Optional[TotpVerifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self.cache = cache
        self.tokens = tokens or TokenIssuer(settings)
        self.totp = totp or TotpVerifier(settings.app_name)
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        # Guards the in-memory lockout fallback used when Redis is absent
        self._state_lock = threading.Lock()
        self._tfa_attempts: dict[str, _AttemptWindow] = {}
        self._pending_notifications: set[asyncio.Future] = set()

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # registration and verification

    async def register(
        self,
        email: str,
        password: str,
        confirm_password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> str:
        if password != confirm_password:
            raise PasswordMismatch()
        if self.store.get_user_by_email(email):
            raise UserAlreadyExists()
        pwd_hash, algo = self._hash_password(password)
        try:
            user = self.store.create_user(
                email,
                pwd_hash,
                algo,
                first_name=first_name,
                last_name=last_name,
                roles={Role.USER},
            )
        except ConstraintViolation:
            # lost a race with a concurrent registration
            raise UserAlreadyExists()
        record = self.tokens.new_email_verification_token(user.id, now=self._now())
        self.store.save_email_verification_token(record)
        self.logger.info("user_registered", user_id=user.id)
        subject, body = verification_email(
            record.token,
            app_name=self.settings.app_name,
            frontend_url=self.settings.frontend_url,
            valid_minutes=self.settings.email_verification_ttl_hours * 60,
        )
        self._notify(user.email, subject, body, kind="email_verification")
        return REGISTERED_MESSAGE

    async def verify_email(self, token: Optional[str]) -> str:
        record = self.store.get_email_verification_token(token) if token else None
        if record is None:
            raise InvalidToken("Invalid verification token")
        if record.is_expired(self._now()):
            raise TokenExpired("Verification token has expired")
        user = self.store.mark_email_verified(record.user_id)
        if user is None:
            self.logger.warning("email_verification_missing_user", user_id=record.user_id)
            raise InvalidToken("Invalid verification token")
        self.logger.info("email_verified", user_id=user.id)
        return EMAIL_VERIFIED_MESSAGE

    # login, refresh, logout

    async def login(
        self,
        email: str,
        password: str,
        tfa_code: Optional[str] = None,
        *,
        remember_me: bool = False,
    ) -> AuthResult:
        user = self.store.get_user_by_email(email)
        if not self.verify_password(user, password):
            self.logger.info("login_failed", reason="credentials")
            raise InvalidCredentials()
        state = AuthState.CREDENTIALS_CHECKED

        if user.tfa_enabled:
            if tfa_code is None or not tfa_code.strip():
                state = AuthState.SECOND_FACTOR_PENDING
                self.logger.info("login_tfa_required", user_id=user.id)
                return AuthResult(message=TFA_REQUIRED_MESSAGE, state=state, user=user)
            await self._check_tfa_code(user, tfa_code, message="Invalid 2FA code")

        state = AuthState.AUTHENTICATED
        access_token = self.tokens.issue_access_token(user.email, now=self._now())
        refresh_token = None
        if remember_me:
            record = self.tokens.new_refresh_token(user.id, now=self._now())
            self.store.save_refresh_token(record)
            refresh_token = record.token
        self.logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return AuthResult(
            message=LOGIN_MESSAGE,
            state=state,
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        if not refresh_token:
            raise InvalidToken("Refresh token not found", status_code=401)
        record = self.store.get_refresh_token(refresh_token)
        if record is None:
            raise InvalidToken("Invalid refresh token", status_code=401)
        if record.is_expired(self._now()):
            self.store.delete_refresh_token(record.token)
            self.logger.info("refresh_token_expired", user_id=record.user_id)
            raise TokenExpired(
                "Refresh token has expired. Please login again.", status_code=401
            )
        user = self.store.get_user(record.user_id)
        if user is None:
            self.store.delete_refresh_token(record.token)
            raise InvalidToken("Invalid refresh token", status_code=401)

        rotated: Optional[str] = None
        if self.settings.rotate_refresh_tokens:
            replacement = self.tokens.new_refresh_token(user.id, now=self._now())
            if not self.store.rotate_refresh_token(record.token, replacement):
                # another request already exchanged this token
                raise InvalidToken("Invalid refresh token", status_code=401)
            rotated = replacement.token

        access_token = self.tokens.issue_access_token(user.email, now=self._now())
        self.logger.info("token_refreshed", user_id=user.id, rotated=rotated is not None)
        return AuthResult(
            message=REFRESHED_MESSAGE,
            state=AuthState.AUTHENTICATED,
            user=user,
            access_token=access_token,
            refresh_token=rotated,
        )

    async def logout(self, refresh_token: Optional[str]) -> str:
        if refresh_token:
            record = self.store.get_refresh_token(refresh_token)
            if record is not None:
                removed = self.store.delete_refresh_tokens_for_user(record.user_id)
                self.logger.info("logout", user_id=record.user_id, revoked=removed)
        return LOGOUT_MESSAGE

    def authenticate_access_token(self, token: Optional[str]) -> AuthContext:
        """Pure signature and expiry check; no store lookup."""
        claims = self.tokens.decode_access_token(token or "", now=self._now())
        return AuthContext(
            email=claims["sub"], token_id=claims.get("jti"), expires_at=claims.get("exp")
        )

    async def current_user(self, email: str) -> AuthResult:
        user = self._require_user(email)
        return AuthResult(message=USER_INFO_MESSAGE, state=AuthState.AUTHENTICATED, user=user)

    # password reset

    async def forgot_password(self, email: str) -> str:
        user = self.store.get_user_by_email(email)
        if user is not None:
            record = self.tokens.new_password_reset_token(user.id, now=self._now())
            self.store.save_password_reset_token(record)
            self.logger.info("password_reset_requested", user_id=user.id)
            subject, body = password_reset_email(
                record.token,
                app_name=self.settings.app_name,
                frontend_url=self.settings.frontend_url,
                valid_minutes=self.settings.password_reset_ttl_minutes,
            )
            self._notify(user.email, subject, body, kind="password_reset")
        else:
            self.logger.info(
                "password_reset_unknown_account",
                lookup_hash=hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16],
            )
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(
        self, token: Optional[str], new_password: str, confirm_password: str
    ) -> str:
        if new_password != confirm_password:
            raise PasswordMismatch()
        record = self.store.get_password_reset_token(token) if token else None
        if record is None:
            raise InvalidToken("Invalid reset token")
        if record.used:
            raise InvalidToken("Reset token has already been used")
        now = self._now()
        if record.is_expired(now):
            raise TokenExpired("Reset token has expired")
        pwd_hash, algo = self._hash_password(new_password)
        user = self.store.consume_password_reset_token(record.token, pwd_hash, algo, now=now)
        if user is None:
            self.logger.warning("password_reset_race_lost", user_id=record.user_id)
            raise InvalidToken("Reset token has already been used")
        self.logger.info("password_reset_completed", user_id=user.id)
        return PASSWORD_RESET_MESSAGE

    # second factor

    async def enable_tfa(self, email: str) -> TfaSetup:
        user = self._require_user(email)
        secret = self.totp.generate_secret()
        # re-provisioning discards the previous secret and requires a fresh verify
        if self.store.set_tfa_state(user.id, secret=secret, enabled=False) is None:
            raise UserNotFound()
        self.logger.info("tfa_provisioned", user_id=user.id)
        otpauth_uri = self.totp.provisioning_uri(secret, user.email)
        return TfaSetup(
            secret=secret,
            otpauth_uri=otpauth_uri,
            qr_code_uri=self.totp.qr_data_uri(otpauth_uri),
        )

    async def verify_tfa(self, email: str, code: Optional[str]) -> str:
        user = self._require_user(email)
        if not user.tfa_secret:
            raise TfaNotInitiated()
        await self._check_tfa_code(
            user, code, message="Invalid verification code", status_code=400
        )
        if self.store.activate_tfa(user.id, user.tfa_secret) is None:
            # secret was re-provisioned after this code was generated
            raise InvalidTfaCode("Invalid verification code", status_code=400)
        self.logger.info("tfa_enabled", user_id=user.id)
        return TFA_ENABLED_MESSAGE

    async def disable_tfa(self, email: str) -> str:
        user = self._require_user(email)
        if self.store.set_tfa_state(user.id, secret=None, enabled=False) is None:
            raise UserNotFound()
        self.logger.info("tfa_disabled", user_id=user.id)
        return TFA_DISABLED_MESSAGE

    async def _check_tfa_code(
        self,
        user: User,
        code: Optional[str],
        *,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        retry_after = await self._tfa_lockout_remaining(user.id)
        if retry_after:
            self.logger.warning("tfa_locked_out", user_id=user.id, retry_after=retry_after)
            raise InvalidTfaCode(
                message,
                status_code=status_code,
                detail={"locked": True, "retry_after": retry_after},
            )
        if not self.totp.verify(user.tfa_secret or "", code):
            locked = await self._record_tfa_failure(user.id)
            self.logger.info("tfa_code_rejected", user_id=user.id, locked=locked)
            raise InvalidTfaCode(
                message,
                status_code=status_code,
                detail={"locked": True, "retry_after": self.settings.tfa_lockout_seconds}
                if locked
                else None,
            )
        await self._clear_tfa_failures(user.id)

    async def _tfa_lockout_remaining(self, user_id: str) -> int:
        """Seconds until ``user_id`` may try a code again; 0 when not locked."""
        if self.cache:
            return await self.cache.tfa_lockout_remaining(user_id)
        now = self._now()
        with self._state_lock:
            window = self._tfa_attempts.get(user_id)
            if not window or not window.locked_until:
                return 0
            if window.locked_until > now:
                return max(1, int((window.locked_until - now).total_seconds()))
            self._tfa_attempts.pop(user_id, None)
            return 0

    async def _record_tfa_failure(self, user_id: str) -> bool:
        max_attempts = self.settings.tfa_max_attempts
        lockout = self.settings.tfa_lockout_seconds
        if self.cache:
            is_locked, attempts = await self.cache.record_tfa_failure(
                user_id, max_attempts=max_attempts, lockout_seconds=lockout
            )
            if is_locked and attempts >= 0:
                self.logger.warning("tfa_lockout_triggered", user_id=user_id, attempts=attempts)
            return is_locked
        now = self._now()
        with self._state_lock:
            window = self._tfa_attempts.get(user_id)
            if window is None or now - window.started >= timedelta(seconds=lockout):
                window = _AttemptWindow(count=0, started=now)
            window.count += 1
            if window.count >= max_attempts:
                window.locked_until = now + timedelta(seconds=lockout)
                self.logger.warning(
                    "tfa_lockout_triggered", user_id=user_id, attempts=window.count
                )
            self._tfa_attempts[user_id] = window
            return window.locked_until is not None

    async def _clear_tfa_failures(self, user_id: str) -> None:
        if self.cache:
            await self.cache.clear_tfa_attempts(user_id)
            return
        with self._state_lock:
            self._tfa_attempts.pop(user_id, None)

    # maintenance

    def purge_expired_tokens(self) -> Dict[str, int]:
        counts = self.store.purge_expired_tokens(self._now())
        self.logger.info("expired_tokens_purged", **counts)
        return counts

    # helpers

    def _require_user(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None:
            raise UserNotFound()
        return user

    def _notify(self, to_email: str, subject: str, body: str, *, kind: str) -> None:
        """Start delivery on a worker thread and return without waiting for it."""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self.notifier.send, to_email, subject, body)
        self._pending_notifications.add(future)
        future.add_done_callback(functools.partial(self._notification_done, kind=kind))

    def _notification_done(self, future: asyncio.Future, *, kind: str) -> None:
        self._pending_notifications.discard(future)
        if future.cancelled():
            self.logger.warning("notification_cancelled", kind=kind)
            return
        exc = future.exception()
        if exc is not None:
            self.logger.error(
                "notification_failed", kind=kind, error_type=type(exc).__name__, error=str(exc)
            )
        elif not future.result():
            self.logger.warning("notification_not_delivered", kind=kind)

    async def drain_notifications(self) -> None:
        """Wait for deliveries still in flight."""
        loop = asyncio.get_running_loop()
        pending = [f for f in self._pending_notifications if f.get_loop() is loop]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user: Optional[User], password: str) -> bool:
        """Verify ``password`` against the user's hash in constant time.

        An unknown user is checked against a throwaway hash so the response
        time does not reveal whether the account exists.
        """
        if user is None:
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except (InvalidHash, VerificationError):
                pass
            return False
        if user.password_algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user.id, algo=user.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerificationError):
            self.logger.info("password_verification_failed", user_id=user.id)
            return False

from __future__ import annotations

import contextlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from credkeep.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32
_SAMESITE_VALUES = frozenset({"lax", "strict", "none"})


def env_field(default: Any, env: str, **kwargs):
    """A pydantic Field that remembers which environment variable feeds it."""
    extra = dict(kwargs.pop("json_schema_extra", None) or {}, env=env)
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_name(field_name: str, extra: Any) -> str:
    if isinstance(extra, dict) and extra.get("env"):
        return extra["env"]
    return field_name.upper()


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/credkeep", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/credkeep", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow running without Redis.",
    )

    app_name: str = env_field(
        "credkeep", "APP_NAME", description="Issuer shown in authenticator apps"
    )
    frontend_url: str = env_field(
        "http://localhost:3000",
        "FRONTEND_URL",
        description="Base URL used for verification and reset links",
    )
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    # unset by default: the cookies carry no SameSite attribute
    cookie_samesite: Optional[str] = env_field(None, "COOKIE_SAMESITE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("credkeep", "JWT_ISSUER")
    jwt_audience: str = env_field("credkeep-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and delete the presented one",
    )

    tfa_max_attempts: int = env_field(5, "TFA_MAX_ATTEMPTS", ge=1)
    tfa_lockout_seconds: int = env_field(300, "TFA_LOCKOUT_SECONDS", ge=1)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE", ge=1)

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("credkeep", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, then ``.env`` in the cwd."""
        sources = [os.environ, dotenv_values(".env")]
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            var = _env_name(name, field.json_schema_extra)
            for source in sources:
                if source.get(var) is not None:
                    values[name] = source[var]
                    break
        return cls(**values)

    @field_validator("cookie_samesite")
    @classmethod
    def _check_samesite(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        value = value.strip().lower()
        if value not in _SAMESITE_VALUES:
            raise ValueError(f"COOKIE_SAMESITE must be one of {sorted(_SAMESITE_VALUES)}")
        return value

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            # resolved from the environment: validators run before shared_fs_root is known
            return _load_or_create_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/credkeep")))
        if len(value) < MIN_JWT_SECRET_LENGTH:
            logger.warning("jwt_secret_short", length=len(value), minimum=MIN_JWT_SECRET_LENGTH)
        return value


def _load_or_create_secret(fs_root: Path) -> str:
    """Return the HS256 key kept in ``fs_root/.jwt_secret``, creating it once.

    Every instance sharing ``SHARED_FS_ROOT`` signs with the same key, and
    issued access tokens stay valid across restarts. The file is written to
    a temp name and renamed so a concurrent reader never sees half a key.
    """
    secret_path = fs_root / ".jwt_secret"
    with contextlib.suppress(OSError):
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= MIN_JWT_SECRET_LENGTH:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
        raise RuntimeError(
            f"cannot persist a generated JWT secret under {fs_root}; "
            "set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Forget cached settings so the next get_settings() re-reads env and .env."""
    global _settings_cache
    _settings_cache = None

from __future__ import annotations

import asyncio
import math
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse

from credkeep.config import Settings, get_settings, reset_settings_cache
from credkeep.logging import get_logger
from credkeep.service.auth import AuthService
from credkeep.service.email import EmailService
from credkeep.storage.memory import MemoryStore
from credkeep.storage.postgres import PostgresStore
from credkeep.storage.redis_cache import RedisCache

logger = get_logger(__name__)

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _redis_location(url: Optional[str]) -> Optional[str]:
    """``redis://:pw@cache:6379/0`` -> ``cache:6379/0`` for log lines."""
    if not url:
        return None
    try:
        parsed = urlparse(url)
        port = f":{parsed.port}" if parsed.port else ""
    except ValueError:
        return "unparseable"
    return f"{parsed.hostname or ''}{port}{parsed.path}"


class LocalRateLimiter:
    """Per-process token buckets used when Redis is not configured.

    Buckets only see this process's traffic, so limits are per worker.
    """

    def __init__(self) -> None:
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def take(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        refill_per_second = limit / window_seconds
        now = time.monotonic()
        with self._lock:
            level, updated = self._buckets.get(key, (float(limit), now))
            level = min(float(limit), level + (now - updated) * refill_per_second)
            allowed = level >= cost
            if allowed:
                level -= cost
            self._buckets[key] = (level, now)
        wait = 0 if allowed else math.ceil((cost - level) / refill_per_second)
        return allowed, int(level), wait


def _build_store(settings: Settings):
    if settings.use_memory_store:
        return "memory", MemoryStore(settings.shared_fs_root, tfa_encryption_key=settings.jwt_secret)
    return "postgres", PostgresStore(settings.database_url)


def _build_cache(settings: Settings) -> Optional[RedisCache]:
    """Connect to Redis, or return None where the per-process fallback is allowed."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is unavailable; set REDIS_URL to a reachable server, or TEST_MODE or "
            "ALLOW_REDIS_FALLBACK_DEV to keep rate limits and TFA lockouts in process"
        ) from failure
    logger.warning(
        "redis_disabled_fallback",
        redis=_redis_location(settings.redis_url),
        reason=type(failure).__name__ if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


def _build_mailer(settings: Settings) -> EmailService:
    return EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
    )


class Runtime:
    """Process-wide wiring: settings, credential store, Redis, mailer and AuthService."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        try:
            self.store_type, self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                use_memory_store=self.settings.use_memory_store,
                error_type=type(exc).__name__,
            )
            raise
        self.cache = _build_cache(self.settings)
        self.rate_limiter = LocalRateLimiter()
        self.email = _build_mailer(self.settings)
        self.auth = AuthService(self.store, self.settings, notifier=self.email, cache=self.cache)
        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )

    async def close(self) -> None:
        await self.auth.drain_notifications()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read. Refuses outside TEST_MODE."""
    global runtime

    with _runtime_lock:
        previous = runtime
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if previous is not None and previous.cache is not None:
            try:
                asyncio.get_running_loop().create_task(previous.cache.close())
            except RuntimeError:
                asyncio.run(previous.cache.close())
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> RateLimitResult:
    """Take ``cost`` from the ``key`` bucket holding ``limit`` tokens per window.

    Redis backs the bucket when configured so every instance shares it.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, 0, 0) if return_remaining else True
    window_seconds = window_seconds if window_seconds > 0 else 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    allowed, remaining, wait = runtime.rate_limiter.take(key, limit, window_seconds, cost)
    return (allowed, remaining, wait) if return_remaining else allowed

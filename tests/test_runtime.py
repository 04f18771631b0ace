import pytest

from credkeep.config import get_settings
from credkeep.service import runtime as runtime_module
from credkeep.service.runtime import (
    LocalRateLimiter,
    _build_cache,
    _redis_location,
    check_rate_limit,
    get_runtime,
)


def test_local_limiter_refuses_after_capacity():
    limiter = LocalRateLimiter()

    results = [limiter.take("login:1.2.3.4", 3, 60)[0] for _ in range(4)]

    assert results == [True, True, True, False]
    allowed, remaining, wait = limiter.take("login:1.2.3.4", 3, 60)
    assert allowed is False
    assert remaining == 0
    assert 0 < wait <= 20


def test_local_limiter_keys_are_independent():
    limiter = LocalRateLimiter()
    limiter.take("login:a", 1, 60)

    assert limiter.take("login:a", 1, 60)[0] is False
    assert limiter.take("login:b", 1, 60)[0] is True


def test_local_limiter_refills(monkeypatch):
    limiter = LocalRateLimiter()
    clock = iter([100.0, 100.0, 107.0])
    monkeypatch.setattr(runtime_module.time, "monotonic", lambda: next(clock))

    assert limiter.take("reset:x", 10, 60)[0] is True
    assert limiter.take("reset:x", 10, 60, cost=10)[0] is False
    # seven seconds at 10 per minute refills the bucket
    assert limiter.take("reset:x", 10, 60, cost=10)[0] is True


async def test_check_rate_limit_without_redis_uses_local_buckets():
    runtime = get_runtime()
    assert runtime.cache is None

    first = await check_rate_limit(runtime, "register:9.9.9.9", 1, 60, return_remaining=True)
    second = await check_rate_limit(runtime, "register:9.9.9.9", 1, 60)

    assert first == (True, 0, 0)
    assert second is False


async def test_zero_limit_disables_limiting():
    assert await check_rate_limit(get_runtime(), "login:x", 0, 60) is True


def test_missing_redis_is_fatal_outside_test_and_dev_modes():
    settings = get_settings().model_copy(
        update={"test_mode": False, "allow_redis_fallback_dev": False, "redis_url": ""}
    )

    with pytest.raises(RuntimeError, match="Redis is unavailable"):
        _build_cache(settings)


def test_redis_location_drops_credentials():
    assert _redis_location("redis://:s3cret@cache:6379/0") == "cache:6379/0"
    assert _redis_location(None) is None

from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket hash; ARGV now (s), refill per second, capacity, cost.
# Returns {allowed, tokens_left, seconds_until_cost_available}.
_BUCKET_TAKE = """
local state = redis.call('HGET', KEYS[1], 'level')
local stamp = redis.call('HGET', KEYS[1], 'at')
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local level = capacity
if state and stamp then
  level = math.min(capacity, tonumber(state) + math.max(0, now - tonumber(stamp)) * rate)
end

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', KEYS[1], 'level', level, 'at', now)
redis.call('PEXPIRE', KEYS[1], math.max(1000, math.ceil((capacity - level) / rate * 1000)))
return {allowed, tostring(level), wait}
"""

# KEYS[1] lock flag, KEYS[2] failure counter; ARGV max failures, lock seconds.
# Returns {locked, failures}; failures is -1 when the lock was already set.
_TFA_FAILURE = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end
local failures = redis.call('INCR', KEYS[2])
if failures == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end
if failures < tonumber(ARGV[1]) then
  return {0, failures}
end
redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
redis.call('DEL', KEYS[2])
return {1, failures}
"""


class RedisCache:
    """Shared counters for request throttling and TOTP brute-force lockout.

    Every key lives under ``namespace`` so one Redis database can serve
    several deployments.
    """

    def __init__(self, redis_url: str, *, namespace: str = "credkeep", socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket_take = self.client.register_script(_BUCKET_TAKE)
        self._tfa_failure = self.client.register_script(_TFA_FAILURE)

    def verify_connection(self) -> None:
        # sync client so the async pool is not bound to the startup event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _key(self, *parts: str) -> str:
        return ":".join((self.namespace,) + parts)

    def rate_key(self, key: str) -> str:
        """Map ``bucket:client`` to a namespaced key with the client part hashed.

        The bucket name stays readable for operators; the client part (an IP
        address or email) is hashed so it never sits in Redis in clear text.
        """
        bucket, _, client = key.partition(":")
        digest = hashlib.sha256(client.encode()).hexdigest()[:32]
        return self._key("rate", bucket, digest)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Take ``cost`` tokens from a bucket refilling ``limit`` per ``window_seconds``."""
        allowed, level, wait = await self._bucket_take(
            keys=[self.rate_key(key)],
            args=[time.time(), limit / window_seconds, limit, max(1, cost)],
        )
        granted = int(allowed) == 1
        if not return_remaining:
            return granted
        return granted, max(0, int(float(level))), int(wait or 0)

    def _lockout_keys(self, user_id: str) -> list:
        return [self._key("tfa", "locked", user_id), self._key("tfa", "failures", user_id)]

    async def tfa_lockout_remaining(self, user_id: str) -> int:
        """Seconds left on the user's lockout, 0 when not locked."""
        ttl = await self.client.ttl(self._lockout_keys(user_id)[0])
        return max(0, int(ttl or 0))

    async def record_tfa_failure(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        """Count a wrong TOTP code; the ``max_attempts``-th failure sets the lock."""
        locked, failures = await self._tfa_failure(
            keys=self._lockout_keys(user_id), args=[max_attempts, lockout_seconds]
        )
        return int(locked) == 1, int(failures)

    async def clear_tfa_attempts(self, user_id: str) -> None:
        await self.client.delete(self._lockout_keys(user_id)[1])

    async def ping(self) -> Optional[bool]:
        return await self.client.ping()

    async def close(self) -> None:
        await self.client.aclose()

from credkeep.storage.redis_cache import RedisCache


class FakeScript:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def __call__(self, keys=None, args=None):
        self.calls.append((keys, args))
        return self.result


class FakeClient:
    def __init__(self):
        self.ttls = {}
        self.deleted = []

    async def ttl(self, key):
        # redis answers -2 for a missing key
        return self.ttls.get(key, -2)

    async def delete(self, key):
        self.deleted.append(key)


def _cache(namespace="credkeep"):
    # constructing the client does not open a connection
    cache = RedisCache("redis://localhost:6379/15", namespace=namespace)
    cache.client = FakeClient()
    return cache


def test_rate_key_hashes_only_the_client_part():
    cache = _cache()

    key = cache.rate_key("login:10.0.0.1")

    assert key.startswith("credkeep:rate:login:")
    assert "10.0.0.1" not in key
    assert key == cache.rate_key("login:10.0.0.1")
    assert key != cache.rate_key("login:10.0.0.2")
    assert _cache("staging").rate_key("login:10.0.0.1").startswith("staging:rate:login:")


async def test_check_rate_limit_parses_script_result():
    cache = _cache()
    cache._bucket_take = FakeScript([1, "4.6", 0])

    allowed, remaining, reset = await cache.check_rate_limit(
        "login:1.2.3.4", 5, 60, return_remaining=True
    )

    assert (allowed, remaining, reset) == (True, 4, 0)
    keys, args = cache._bucket_take.calls[0]
    assert keys == [cache.rate_key("login:1.2.3.4")]
    assert args[1:] == [5 / 60, 5, 1]


async def test_check_rate_limit_denied():
    cache = _cache()
    cache._bucket_take = FakeScript([0, "0.2", 12])

    assert await cache.check_rate_limit("login:1.2.3.4", 5, 60) is False


async def test_tfa_failure_and_lockout_keys():
    cache = _cache()
    cache._tfa_failure = FakeScript([1, 5])

    locked, failures = await cache.record_tfa_failure("user-1", max_attempts=5, lockout_seconds=300)

    assert (locked, failures) == (True, 5)
    keys, args = cache._tfa_failure.calls[0]
    assert keys == ["credkeep:tfa:locked:user-1", "credkeep:tfa:failures:user-1"]
    assert args == [5, 300]

    cache.client.ttls["credkeep:tfa:locked:user-1"] = 240
    assert await cache.tfa_lockout_remaining("user-1") == 240
    assert await cache.tfa_lockout_remaining("user-2") == 0

    await cache.clear_tfa_attempts("user-1")
    assert cache.client.deleted == ["credkeep:tfa:failures:user-1"]

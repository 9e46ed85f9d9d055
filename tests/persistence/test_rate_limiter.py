"""
Rate Limiter Tests

Fixed-window counting per scope and identifier, window rollover, pruning
of stale counters, and the Redis backend's fail-open behavior.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from persistence.rate_limiter import (
    DEFAULT_LIMITS,
    LOGIN_SCOPE,
    STEP_UP_SCOPE,
    InMemoryRateLimiter,
    RateLimit,
    RedisRateLimiter,
)


LIMITS = {
    LOGIN_SCOPE: RateLimit(max_requests=3, window_seconds=100),
    STEP_UP_SCOPE: RateLimit(max_requests=2, window_seconds=50),
}


@pytest.fixture
def limiter(clock):
    return InMemoryRateLimiter(limits=LIMITS, clock=clock)


class UnreachableRedis:
    def incr(self, key):
        raise RedisConnectionError("connection refused")

    def expire(self, key, seconds):
        raise RedisConnectionError("connection refused")


class CountingRedis:
    """Just enough of the redis client for INCR/EXPIRE."""

    def __init__(self):
        self.counts = {}
        self.ttls = {}

    def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key, seconds):
        self.ttls[key] = seconds


# =============================================================================
# In-Memory Backend
# =============================================================================

class TestInMemoryRateLimiter:

    def test_defaults(self):
        assert DEFAULT_LIMITS[LOGIN_SCOPE] == RateLimit(10, 900)
        assert DEFAULT_LIMITS[STEP_UP_SCOPE] == RateLimit(5, 300)

    def test_allows_up_to_limit(self, limiter):
        results = [limiter.check(LOGIN_SCOPE, "10.0.0.1") for _ in range(4)]
        assert results == [True, True, True, False]

    def test_scopes_are_independent(self, limiter):
        for _ in range(3):
            limiter.check(LOGIN_SCOPE, "10.0.0.1")

        assert limiter.check(STEP_UP_SCOPE, "10.0.0.1")
        assert not limiter.check(LOGIN_SCOPE, "10.0.0.1")

    def test_identifiers_are_independent(self, limiter):
        for _ in range(3):
            limiter.check(LOGIN_SCOPE, "10.0.0.1")

        assert limiter.check(LOGIN_SCOPE, "10.0.0.2")

    def test_next_window_resets(self, limiter, clock):
        for _ in range(4):
            limiter.check(LOGIN_SCOPE, "10.0.0.1")
        clock.advance(100)

        assert limiter.check(LOGIN_SCOPE, "10.0.0.1")

    def test_window_for(self, limiter):
        assert limiter.window_for(STEP_UP_SCOPE) == 50

    def test_stale_windows_are_pruned(self, limiter, clock):
        for i in range(100):
            limiter.check(LOGIN_SCOPE, f"10.0.0.{i}")
        assert len(limiter) == 100

        clock.advance(InMemoryRateLimiter.PRUNE_INTERVAL + 100)
        limiter.check(LOGIN_SCOPE, "10.0.1.1")

        assert len(limiter) == 1


# =============================================================================
# Redis Backend
# =============================================================================

class TestRedisRateLimiter:

    def test_counts_and_expires(self, clock):
        client = CountingRedis()
        limiter = RedisRateLimiter(client=client, limits=LIMITS, clock=clock)

        results = [limiter.check(STEP_UP_SCOPE, "10.0.0.1") for _ in range(3)]

        assert results == [True, True, False]
        window = int(clock.now // 50)
        assert client.counts == {f"RATE:step_up:10.0.0.1:{window}": 3}
        assert client.ttls == {f"RATE:step_up:10.0.0.1:{window}": 50}

    def test_fails_open(self, clock):
        limiter = RedisRateLimiter(client=UnreachableRedis(), limits=LIMITS, clock=clock)
        assert all(limiter.check(LOGIN_SCOPE, "10.0.0.1") for _ in range(10))

    def test_against_live_redis(self, clean_redis, clock):
        limiter = RedisRateLimiter(client=clean_redis, limits=LIMITS, clock=clock)
        results = [limiter.check(LOGIN_SCOPE, "10.0.0.1") for _ in range(4)]

        assert results == [True, True, True, False]
        assert clean_redis.ttl(f"RATE:login:10.0.0.1:{int(clock.now // 100)}") > 0

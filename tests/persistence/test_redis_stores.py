"""
Redis Store Integration Tests

Requires a reachable Redis (REDIS_HOST / REDIS_PORT / REDIS_PASSWORD);
skipped otherwise.
"""

import json
import random
import threading
import time

import pytest

from core.models.challenge import Accepted, ChallengeManager, RejectReason, Rejected, Retry
from core.schemas.outputs import ChallengeType
from persistence.challenge_store import Challenge, RedisChallengeStore, Transition
from persistence.profile_store import (
    MAX_PROFILE_SAMPLES,
    BiometricSampleSummary,
    RedisProfileStore,
    synthetic_profile,
)

from tests.conftest import FakeClock


@pytest.fixture
def clock():
    """Wall-clock start: Redis key expiry is real time."""
    return FakeClock(start=time.time())


def summary(n: float) -> BiometricSampleSummary:
    return BiometricSampleSummary(
        avg_hold_time=n,
        avg_flight_time=60.0,
        hold_time_variance=1.0,
        flight_time_variance=1.0,
        error_rate=2.0,
        typing_speed=50.0,
        timestamp=n,
    )


# =============================================================================
# Profile Store
# =============================================================================

class TestRedisProfileStore:

    def test_append_and_get(self, clean_redis, clock):
        store = RedisProfileStore(client=clean_redis, clock=clock)
        store.append("alice", summary(1))

        profile = store.get("alice")
        assert profile.created_at == clock.now
        assert profile.samples[0].avg_hold_time == 1

    def test_key_schema(self, clean_redis, clock):
        RedisProfileStore(client=clean_redis, clock=clock).append("alice", summary(1))
        data = json.loads(clean_redis.get("PROFILE:alice"))
        assert data["identity"] == "alice"

    def test_fifo_eviction(self, clean_redis, clock):
        store = RedisProfileStore(client=clean_redis, clock=clock)
        for i in range(MAX_PROFILE_SAMPLES + 1):
            store.append("alice", summary(i))

        samples = store.get("alice").samples
        assert len(samples) == MAX_PROFILE_SAMPLES
        assert samples[0].avg_hold_time == 1

    def test_corrupted_profile_is_treated_as_new(self, clean_redis, clock):
        clean_redis.set("PROFILE:alice", "{not json")
        assert RedisProfileStore(client=clean_redis, clock=clock).get("alice") is None

    def test_append_replaces_corrupted_profile(self, clean_redis, clock):
        clean_redis.set("PROFILE:alice", "{")
        store = RedisProfileStore(client=clean_redis, clock=clock)

        profile = store.append("alice", summary(1))

        assert profile.created_at == clock.now
        assert len(profile.samples) == 1
        assert len(store.get("alice").samples) == 1

    def test_concurrent_appends(self, clean_redis, clock):
        store = RedisProfileStore(client=clean_redis, clock=clock)
        store.MAX_RETRIES = 50

        def worker():
            for i in range(5):
                store.append("alice", summary(i))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.get("alice").samples) == 20

    def test_seed(self, clean_redis, clock):
        store = RedisProfileStore(client=clean_redis, clock=clock)
        store.append("alice", summary(1))
        store.seed(synthetic_profile("alice", rng=random.Random(2), now=clock.now))

        assert len(store.get("alice").samples) >= 5

    def test_reset(self, clean_redis, clock):
        store = RedisProfileStore(client=clean_redis, clock=clock)
        store.append("alice", summary(1))
        store.reset("alice")
        assert store.get("alice") is None


# =============================================================================
# Challenge Store
# =============================================================================

class TestRedisChallengeStore:

    def _challenge(self, clock, challenge_id="c1", ttl=300.0):
        return Challenge(
            id=challenge_id,
            owner_identity="alice",
            type=ChallengeType.CAPTCHA,
            prompt="Type ABCDE",
            expected_answer="ABCDE",
            created_at=clock.now,
            expires_at=clock.now + ttl,
        )

    def test_put_get(self, clean_redis, clock):
        store = RedisChallengeStore(client=clean_redis)
        store.put(self._challenge(clock))

        restored = store.get("c1")
        assert restored.type is ChallengeType.CAPTCHA
        assert restored.expected_answer == "ABCDE"

    def test_update_atomic(self, clean_redis, clock):
        store = RedisChallengeStore(client=clean_redis)
        store.put(self._challenge(clock))

        def bump(c):
            c.attempts += 1
            return Transition.SAVE, c.attempts

        assert store.update_atomic("c1", bump) == 1
        assert store.get("c1").attempts == 1

        store.update_atomic("c1", lambda c: (Transition.DELETE, None))
        assert store.get("c1") is None

    def test_sweep_and_all(self, clean_redis, clock):
        store = RedisChallengeStore(client=clean_redis)
        store.put(self._challenge(clock, "old", ttl=10.0))
        store.put(self._challenge(clock, "new", ttl=300.0))

        assert store.sweep_expired(clock.now + 11) == 1
        assert [c.id for c in store.all()] == ["new"]

    def test_manager_exhaustion(self, clean_redis, clock):
        manager = ChallengeManager(store=RedisChallengeStore(client=clean_redis), clock=clock)
        view = manager.create("alice", ChallengeType.PATTERN)

        assert isinstance(manager.verify(view.id, "wrong"), Retry)
        assert isinstance(manager.verify(view.id, "wrong"), Retry)
        assert manager.verify(view.id, "wrong") == Rejected(RejectReason.EXHAUSTED)
        assert manager.verify(view.id, "wrong") == Rejected(RejectReason.NOT_FOUND)

    def test_manager_single_winner(self, clean_redis, clock):
        store = RedisChallengeStore(client=clean_redis)
        store.MAX_RETRIES = 50
        manager = ChallengeManager(store=store, clock=clock)
        view = manager.create("alice", ChallengeType.CAPTCHA)
        answer = store.get(view.id).expected_answer

        results = []
        lock = threading.Lock()

        def worker():
            result = manager.verify(view.id, answer)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(isinstance(r, Accepted) for r in results) == 1

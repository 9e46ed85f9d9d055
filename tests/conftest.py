"""
Keystroke Gate Test Suite - Shared Pytest Fixtures

This conftest.py provides fixtures for all test categories including:
- Redis connection and cleanup for store tests
- A controllable clock
- Processor, engine, store and orchestrator instances
- Builders for keyboard events, feature vectors and baseline profiles

Usage:
    pytest tests/ -v
"""

import os
import random
from typing import Iterable, List, Optional

import pytest

from core.processors.keyboard import FeatureVector
from core.schemas.inputs import KeyboardEvent, KeyEventType
from persistence.profile_store import BiometricProfile, BiometricSampleSummary


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Redis Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def redis_client():
    """
    Session-scoped Redis client for store integration tests.

    Skipped when no Redis server is reachable at REDIS_HOST:REDIS_PORT.
    """
    import redis

    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", "6379"))
    password = os.environ.get("REDIS_PASSWORD")

    client = redis.Redis(
        host=host,
        port=port,
        password=password,
        decode_responses=True,
        socket_timeout=2.0,
    )
    try:
        client.ping()
    except redis.RedisError:
        pytest.skip(f"Redis not available at {host}:{port}")

    yield client
    client.close()


@pytest.fixture
def clean_redis(redis_client):
    """
    Function-scoped fixture that provides a clean Redis state.
    Flushes the database after each test for isolation.
    """
    redis_client.flushdb()
    yield redis_client
    redis_client.flushdb()


# =============================================================================
# Builders
# =============================================================================

def make_keyboard_event(key: str, event_type: KeyEventType, timestamp: float) -> KeyboardEvent:
    """Create a KeyboardEvent for testing."""
    return KeyboardEvent(key=key, event_type=event_type, timestamp=timestamp)


def type_keys(
    keys: Iterable[str],
    start: float = 0.0,
    hold: float = 100.0,
    gap: float = 50.0,
) -> List[KeyboardEvent]:
    """
    Events for typing ``keys`` one at a time: each key is held for ``hold``
    ms and the next press comes ``gap`` ms after the previous release.
    """
    events: List[KeyboardEvent] = []
    t = start
    for key in keys:
        events.append(make_keyboard_event(key, KeyEventType.DOWN, t))
        events.append(make_keyboard_event(key, KeyEventType.UP, t + hold))
        t += hold + gap
    return events


def make_features(
    hold_times: Optional[List[float]] = None,
    flight_times: Optional[List[float]] = None,
    error_rate: float = 2.0,
    typing_speed: float = 55.0,
) -> FeatureVector:
    return FeatureVector.from_samples(
        hold_times=hold_times if hold_times is not None else [80.0, 82.0, 79.0, 81.0],
        flight_times=flight_times if flight_times is not None else [60.0, 58.0, 61.0],
        error_rate=error_rate,
        typing_speed=typing_speed,
    )


def make_profile(
    identity: str = "alice",
    n_samples: int = 20,
    created_at: float = 1_700_000_000.0 - 40 * 86400,
    seed: int = 7,
) -> BiometricProfile:
    """
    Baseline of ``n_samples`` sessions close to the default make_features()
    session: holds ~80ms, flights ~60ms, 2% errors, 55 WPM.
    """
    rng = random.Random(seed)
    profile = BiometricProfile(identity=identity, created_at=created_at, last_updated=created_at)
    for i in range(n_samples):
        profile.samples.append(BiometricSampleSummary(
            avg_hold_time=80.5 + rng.uniform(-1.5, 1.5),
            avg_flight_time=59.7 + rng.uniform(-1.5, 1.5),
            hold_time_variance=1.25 + rng.uniform(-0.1, 0.1),
            flight_time_variance=1.56 + rng.uniform(-0.1, 0.1),
            error_rate=2.0 + rng.uniform(-0.05, 0.05),
            typing_speed=55.0 + rng.uniform(-1.5, 1.5),
            hold_velocity_variance=5.56 + rng.uniform(-0.3, 0.3),
            timestamp=created_at + i * 3600,
        ))
    return profile


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def keyboard_processor():
    """Create a KeyboardProcessor instance."""
    from core.processors.keyboard import KeyboardProcessor
    return KeyboardProcessor()


@pytest.fixture
def fusion_engine(clock):
    """Create a RiskFusionEngine on the fake clock."""
    from core.models.fusion import RiskFusionEngine
    return RiskFusionEngine(clock=clock)


@pytest.fixture
def profile_store(clock):
    from persistence.profile_store import InMemoryProfileStore
    return InMemoryProfileStore(clock=clock)


@pytest.fixture
def challenge_manager(clock):
    """ChallengeManager over an in-memory store with a seeded rng."""
    from core.models.challenge import ChallengeManager
    from persistence.challenge_store import InMemoryChallengeStore
    return ChallengeManager(
        store=InMemoryChallengeStore(),
        rng=random.Random(1234),
        clock=clock,
    )


@pytest.fixture(scope="session")
def trained_estimator():
    """LocalRiskEstimator trained synchronously once per session."""
    from core.models.local_risk import LocalRiskEstimator
    estimator = LocalRiskEstimator(seed=42)
    estimator.train(epochs=20)
    return estimator

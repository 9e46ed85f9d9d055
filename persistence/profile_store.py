"""
Keystroke Gate Profile Store

Per-identity behavioral baselines: a bounded, append-only history of
summarized login sessions. The fusion engine only reads profiles; the
orchestrator appends one summary after every non-denied decision.

Key Schemas (Redis backend):
    PROFILE:{identity}  → BiometricProfile JSON
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis
from redis.exceptions import RedisError, WatchError

from core.processors.keyboard import mean, variance
from .connection import StorageUnavailableError, get_redis_client


logger = logging.getLogger(__name__)

# Maximum summaries retained per identity (oldest evicted first)
MAX_PROFILE_SAMPLES = 50


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class BiometricSampleSummary:
    """Statistical digest of one completed login session."""
    avg_hold_time: float
    avg_flight_time: float
    hold_time_variance: float
    flight_time_variance: float
    error_rate: float
    typing_speed: float
    hold_velocity_variance: Optional[float] = None
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BiometricSampleSummary:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class BiometricProfile:
    """Rolling behavioral baseline for one identity."""
    identity: str
    created_at: float
    last_updated: float
    samples: List[BiometricSampleSummary] = field(default_factory=list)

    def append(self, summary: BiometricSampleSummary, now: float) -> None:
        """Append a summary, evicting the oldest beyond MAX_PROFILE_SAMPLES."""
        self.samples.append(summary)
        if len(self.samples) > MAX_PROFILE_SAMPLES:
            self.samples = self.samples[-MAX_PROFILE_SAMPLES:]
        self.last_updated = now

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BiometricProfile:
        return cls(
            identity=data["identity"],
            created_at=data["created_at"],
            last_updated=data["last_updated"],
            samples=[BiometricSampleSummary.from_dict(s) for s in data.get("samples", [])],
        )


# =============================================================================
# Store Interface
# =============================================================================

class ProfileStore(ABC):
    """Baseline store contract used by the orchestrator."""

    @abstractmethod
    def get(self, identity: str) -> Optional[BiometricProfile]:
        """Return the identity's profile, or None if it has no history."""

    @abstractmethod
    def append(self, identity: str, summary: BiometricSampleSummary) -> BiometricProfile:
        """Append a summary, creating the profile on first use."""

    @abstractmethod
    def reset(self, identity: str) -> None:
        """Drop all history for an identity."""

    @abstractmethod
    def seed(self, profile: BiometricProfile) -> None:
        """Install a complete profile, replacing any stored history."""


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryProfileStore(ProfileStore):
    """
    Thread-safe in-memory profile store.

    Each identity is mutated under its own lock; the lock table itself is
    guarded by ``_lock_guard``.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._profiles: Dict[str, BiometricProfile] = {}
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._lock_guard = threading.Lock()

    def _get_lock(self, identity: str) -> threading.Lock:
        with self._lock_guard:
            return self._locks[identity]

    def get(self, identity: str) -> Optional[BiometricProfile]:
        with self._get_lock(identity):
            profile = self._profiles.get(identity)
            if profile is None:
                return None
            # Readers get a snapshot
            return BiometricProfile.from_dict(profile.to_dict())

    def append(self, identity: str, summary: BiometricSampleSummary) -> BiometricProfile:
        with self._get_lock(identity):
            now = self._clock()
            profile = self._profiles.get(identity)
            if profile is None:
                profile = BiometricProfile(identity=identity, created_at=now, last_updated=now)
                self._profiles[identity] = profile
            profile.append(summary, now)
            logger.debug(f"Profile updated for {identity}: {len(profile.samples)} samples")
            return BiometricProfile.from_dict(profile.to_dict())

    def seed(self, profile: BiometricProfile) -> None:
        """Install a complete profile (demo users, tests)."""
        with self._get_lock(profile.identity):
            self._profiles[profile.identity] = BiometricProfile.from_dict(profile.to_dict())

    def reset(self, identity: str) -> None:
        with self._get_lock(identity):
            self._profiles.pop(identity, None)


# =============================================================================
# Redis Backend
# =============================================================================

class RedisProfileStore(ProfileStore):
    """
    Redis-backed profile store.

    Appends use WATCH/MULTI/EXEC with retry on conflict, so concurrent
    appends for the same identity never lose a summary.
    """

    MAX_RETRIES: int = 5

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.client = client or get_redis_client()
        self._clock = clock

    def _profile_key(self, identity: str) -> str:
        return f"PROFILE:{identity}"

    def get(self, identity: str) -> Optional[BiometricProfile]:
        try:
            data = self.client.get(self._profile_key(identity))
        except RedisError as e:
            logger.error(f"Failed to get profile {identity}: {e}")
            raise StorageUnavailableError(str(e)) from e
        return self._decode(identity, data)

    @staticmethod
    def _decode(identity: str, raw: Optional[str]) -> Optional[BiometricProfile]:
        if raw is None:
            return None
        try:
            return BiometricProfile.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Corrupted profile for {identity}, treating as new: {e}")
            return None

    def append(self, identity: str, summary: BiometricSampleSummary) -> BiometricProfile:
        key = self._profile_key(identity)

        for attempt in range(self.MAX_RETRIES):
            try:
                with self.client.pipeline() as pipe:
                    pipe.watch(key)

                    now = self._clock()
                    profile = self._decode(identity, pipe.get(key))
                    if profile is None:
                        profile = BiometricProfile(identity=identity, created_at=now, last_updated=now)
                    profile.append(summary, now)

                    pipe.multi()
                    pipe.set(key, json.dumps(profile.to_dict()))
                    pipe.execute()

                    return profile

            except WatchError:
                logger.debug(f"Watch conflict on profile append, attempt {attempt + 1}")
                continue
            except RedisError as e:
                logger.error(f"Redis error on profile append {identity}: {e}")
                raise StorageUnavailableError(str(e)) from e

        logger.warning(f"Max retries exceeded for profile append {identity}")
        raise StorageUnavailableError(f"profile append for {identity} kept conflicting")

    def reset(self, identity: str) -> None:
        try:
            self.client.delete(self._profile_key(identity))
        except RedisError as e:
            logger.error(f"Failed to reset profile {identity}: {e}")
            raise StorageUnavailableError(str(e)) from e

    def seed(self, profile: BiometricProfile) -> None:
        try:
            self.client.set(self._profile_key(profile.identity), json.dumps(profile.to_dict()))
        except RedisError as e:
            logger.error(f"Failed to seed profile {profile.identity}: {e}")
            raise StorageUnavailableError(str(e)) from e


# =============================================================================
# Demo Baselines
# =============================================================================

# (hold ms, flight ms, error %, WPM, relative spread) per typing style
DEMO_PROFILE_KINDS: Dict[str, Tuple[float, float, float, float, float]] = {
    "consistent": (80.0, 120.0, 2.0, 50.0, 0.1),
    "normal": (90.0, 110.0, 5.0, 40.0, 0.2),
    "robotic": (100.0, 100.0, 0.0, 60.0, 0.05),  # suspiciously uniform
}

SECONDS_PER_DAY = 86400.0


def _synthetic_summary(kind: str, rng: random.Random, timestamp: float) -> BiometricSampleSummary:
    hold, flight, error_rate, speed, spread = DEMO_PROFILE_KINDS[kind]

    def jitter(base: float) -> float:
        return base * (1 + (rng.random() - 0.5) * spread)

    holds = [jitter(hold) for _ in range(8)]
    flights = [jitter(flight) for _ in range(7)]
    return BiometricSampleSummary(
        avg_hold_time=mean(holds),
        avg_flight_time=mean(flights),
        hold_time_variance=variance(holds),
        flight_time_variance=variance(flights),
        error_rate=jitter(error_rate),
        typing_speed=jitter(speed),
        hold_velocity_variance=rng.random() * 10,
        timestamp=timestamp,
    )


def synthetic_profile(
    identity: str,
    kind: str = "normal",
    rng: Optional[random.Random] = None,
    now: Optional[float] = None,
) -> BiometricProfile:
    """
    Build a demo baseline of 5-20 daily sessions for one typing style.

    Samples run oldest first, the newest at ``now``.
    """
    if kind not in DEMO_PROFILE_KINDS:
        raise ValueError(f"Unknown demo profile kind: {kind}")
    rng = rng or random.Random()
    now = time.time() if now is None else now

    count = rng.randint(5, 20)
    created_at = now - (count - 1) * SECONDS_PER_DAY
    profile = BiometricProfile(identity=identity, created_at=created_at, last_updated=now)
    for i in range(count):
        profile.samples.append(_synthetic_summary(kind, rng, created_at + i * SECONDS_PER_DAY))
    return profile

"""
Keystroke Gate Persistence Layer

Public exports for the Redis connection, the profile/challenge stores
and the rate limiter.
"""

from .connection import StorageUnavailableError, get_redis_client
from .profile_store import (
    BiometricProfile,
    BiometricSampleSummary,
    InMemoryProfileStore,
    ProfileStore,
    RedisProfileStore,
    synthetic_profile,
)
from .challenge_store import (
    Challenge,
    ChallengeStore,
    InMemoryChallengeStore,
    RedisChallengeStore,
    Transition,
)
from .rate_limiter import (
    InMemoryRateLimiter,
    RateLimit,
    RateLimiter,
    RedisRateLimiter,
)

__all__ = [
    "StorageUnavailableError",
    "get_redis_client",
    "BiometricProfile",
    "BiometricSampleSummary",
    "InMemoryProfileStore",
    "ProfileStore",
    "RedisProfileStore",
    "synthetic_profile",
    "Challenge",
    "ChallengeStore",
    "InMemoryChallengeStore",
    "RedisChallengeStore",
    "Transition",
    "InMemoryRateLimiter",
    "RateLimit",
    "RateLimiter",
    "RedisRateLimiter",
]

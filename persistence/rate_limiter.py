"""
Keystroke Gate Rate Limiter

Fixed-window request counters for the authentication endpoints.

Key Schemas (Redis backend):
    RATE:{scope}:{identifier}:{window}  → request count (expires with the window)
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis
from redis.exceptions import RedisError

from .connection import get_redis_client


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window_seconds: int


LOGIN_SCOPE = "login"
STEP_UP_SCOPE = "step_up"

DEFAULT_LIMITS: Dict[str, RateLimit] = {
    LOGIN_SCOPE: RateLimit(max_requests=10, window_seconds=15 * 60),
    STEP_UP_SCOPE: RateLimit(max_requests=5, window_seconds=5 * 60),
}


# =============================================================================
# Limiter Interface
# =============================================================================

class RateLimiter(ABC):
    """Per-scope, per-identifier fixed-window limiter."""

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimit]] = None,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self._clock = clock

    def window_for(self, scope: str) -> int:
        """Window length in seconds, used for Retry-After."""
        return self.limits[scope].window_seconds

    def check(self, scope: str, identifier: str) -> bool:
        """Count one request; False once the scope's limit is exceeded."""
        limit = self.limits[scope]
        window = int(self._clock() // limit.window_seconds)
        count = self._increment(scope, identifier, window, limit)
        if count > limit.max_requests:
            logger.warning(f"Rate limit exceeded: {scope} for {identifier}")
            return False
        return True

    @abstractmethod
    def _increment(self, scope: str, identifier: str, window: int, limit: RateLimit) -> int:
        """Increment and return the counter for the current window."""


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryRateLimiter(RateLimiter):
    """Counters in a dict under one lock; stale windows pruned every minute."""

    PRUNE_INTERVAL: float = 60.0

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimit]] = None,
        clock: Callable[[], float] = time.time
    ) -> None:
        super().__init__(limits, clock)
        self._counters: Dict[Tuple[str, str, int], int] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    def _increment(self, scope: str, identifier: str, window: int, limit: RateLimit) -> int:
        key = (scope, identifier, window)
        with self._lock:
            self._prune()
            count = self._counters.get(key, 0) + 1
            self._counters[key] = count
            return count

    def _prune(self) -> None:
        now = self._clock()
        if now - self._last_prune < self.PRUNE_INTERVAL:
            return
        self._last_prune = now
        stale = [
            key for key in self._counters
            if key[2] < int(now // self.limits[key[0]].window_seconds)
        ]
        for key in stale:
            del self._counters[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


# =============================================================================
# Redis Backend
# =============================================================================

class RedisRateLimiter(RateLimiter):
    """INCR + EXPIRE counters; fails open when Redis is unreachable."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        limits: Optional[Dict[str, RateLimit]] = None,
        clock: Callable[[], float] = time.time
    ) -> None:
        super().__init__(limits, clock)
        self.client = client or get_redis_client()

    def _rate_key(self, scope: str, identifier: str, window: int) -> str:
        return f"RATE:{scope}:{identifier}:{window}"

    def _increment(self, scope: str, identifier: str, window: int, limit: RateLimit) -> int:
        key = self._rate_key(scope, identifier, window)
        try:
            count = self.client.incr(key)
            if count == 1:
                self.client.expire(key, limit.window_seconds)  # Auto-cleanup
            return count
        except RedisError as e:
            logger.warning(f"Rate limit check failed: {e}")
            return 0  # Fail open

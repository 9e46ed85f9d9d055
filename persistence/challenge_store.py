"""
Keystroke Gate Challenge Store

Storage for step-up challenges with atomic per-challenge updates.
Every state transition of a challenge goes through ``update_atomic`` so
that two concurrent verifications of the same challenge are serialized.

Key Schemas (Redis backend):
    CHALLENGE:{challenge_id}  → Challenge JSON (expires with the challenge)
"""

from __future__ import annotations

import json
import logging
import math
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import redis
from redis.exceptions import RedisError, WatchError

from core.schemas.outputs import ChallengeType
from .connection import StorageUnavailableError, get_redis_client


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class Challenge:
    """Step-up challenge record. Timestamps are epoch seconds."""
    id: str
    owner_identity: str
    type: ChallengeType
    prompt: str
    expected_answer: str
    created_at: float
    expires_at: float
    hints: List[str] = field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 3
    completed: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Challenge:
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        fields["type"] = ChallengeType(fields["type"])
        return cls(**fields)


class Transition(str, Enum):
    """What ``update_atomic`` should do with the challenge after the callback."""
    KEEP = "KEEP"
    SAVE = "SAVE"
    DELETE = "DELETE"


UpdateFn = Callable[[Optional[Challenge]], Tuple[Transition, T]]


# =============================================================================
# Store Interface
# =============================================================================

class ChallengeStore(ABC):
    """Challenge persistence contract used by the ChallengeManager."""

    @abstractmethod
    def put(self, challenge: Challenge) -> None:
        """Insert or overwrite a challenge."""

    @abstractmethod
    def get(self, challenge_id: str) -> Optional[Challenge]:
        """Return a snapshot of the challenge, or None."""

    @abstractmethod
    def delete(self, challenge_id: str) -> None:
        """Remove a challenge if present."""

    @abstractmethod
    def update_atomic(self, challenge_id: str, update_fn: UpdateFn) -> T:
        """
        Run ``update_fn`` on the current challenge (or None) with exclusive
        access, then apply the returned Transition. Returns the callback's
        result value.
        """

    @abstractmethod
    def sweep_expired(self, now: float) -> int:
        """Delete every challenge with now > expires_at; return the count."""

    @abstractmethod
    def all(self) -> List[Challenge]:
        """Snapshot of every stored challenge."""


# =============================================================================
# In-Memory Backend
# =============================================================================

class InMemoryChallengeStore(ChallengeStore):
    """Thread-safe in-memory challenge store with per-challenge locks."""

    def __init__(self) -> None:
        self._challenges: Dict[str, Challenge] = {}
        self._store_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._lock_guard = threading.Lock()

    def _get_lock(self, challenge_id: str) -> threading.Lock:
        with self._lock_guard:
            return self._locks[challenge_id]

    def _drop_lock(self, challenge_id: str) -> None:
        with self._lock_guard:
            self._locks.pop(challenge_id, None)

    def put(self, challenge: Challenge) -> None:
        with self._store_lock:
            self._challenges[challenge.id] = Challenge.from_dict(challenge.to_dict())

    def get(self, challenge_id: str) -> Optional[Challenge]:
        with self._store_lock:
            challenge = self._challenges.get(challenge_id)
        return Challenge.from_dict(challenge.to_dict()) if challenge else None

    def delete(self, challenge_id: str) -> None:
        with self._store_lock:
            self._challenges.pop(challenge_id, None)

    def update_atomic(self, challenge_id: str, update_fn: UpdateFn) -> T:
        with self._get_lock(challenge_id):
            current = self.get(challenge_id)
            transition, result = update_fn(current)

            if transition == Transition.SAVE and current is not None:
                self.put(current)
            elif transition == Transition.DELETE:
                self.delete(challenge_id)
        if current is None or transition == Transition.DELETE:
            self._drop_lock(challenge_id)
        return result

    def sweep_expired(self, now: float) -> int:
        with self._store_lock:
            expired = [cid for cid, c in self._challenges.items() if c.is_expired(now)]
            for cid in expired:
                del self._challenges[cid]
        for cid in expired:
            self._drop_lock(cid)
        return len(expired)

    def all(self) -> List[Challenge]:
        with self._store_lock:
            return [Challenge.from_dict(c.to_dict()) for c in self._challenges.values()]


# =============================================================================
# Redis Backend
# =============================================================================

class RedisChallengeStore(ChallengeStore):
    """
    Redis-backed challenge store.

    Updates use WATCH/MULTI/EXEC: if another request changes the challenge
    between read and write, the transaction aborts and the callback re-runs
    against the fresh state.
    """

    MAX_RETRIES: int = 5
    KEY_PREFIX: str = "CHALLENGE:"

    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.client = client or get_redis_client()

    def _challenge_key(self, challenge_id: str) -> str:
        return f"{self.KEY_PREFIX}{challenge_id}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Challenge]:
        if raw is None:
            return None
        try:
            return Challenge.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Corrupted challenge record dropped: {e}")
            return None

    def _write(self, pipe: Any, challenge: Challenge) -> None:
        key = self._challenge_key(challenge.id)
        pipe.set(key, json.dumps(challenge.to_dict()))
        # Redis drops the key shortly after the challenge itself expires
        pipe.expireat(key, int(math.ceil(challenge.expires_at)) + 1)

    def put(self, challenge: Challenge) -> None:
        try:
            with self.client.pipeline() as pipe:
                self._write(pipe, challenge)
                pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to save challenge {challenge.id}: {e}")
            raise StorageUnavailableError(str(e)) from e

    def get(self, challenge_id: str) -> Optional[Challenge]:
        try:
            return self._decode(self.client.get(self._challenge_key(challenge_id)))
        except RedisError as e:
            logger.error(f"Failed to get challenge {challenge_id}: {e}")
            raise StorageUnavailableError(str(e)) from e

    def delete(self, challenge_id: str) -> None:
        try:
            self.client.delete(self._challenge_key(challenge_id))
        except RedisError as e:
            logger.error(f"Failed to delete challenge {challenge_id}: {e}")
            raise StorageUnavailableError(str(e)) from e

    def update_atomic(self, challenge_id: str, update_fn: UpdateFn) -> T:
        key = self._challenge_key(challenge_id)

        for attempt in range(self.MAX_RETRIES):
            try:
                with self.client.pipeline() as pipe:
                    pipe.watch(key)
                    current = self._decode(pipe.get(key))
                    transition, result = update_fn(current)

                    pipe.multi()
                    if transition == Transition.SAVE and current is not None:
                        self._write(pipe, current)
                    elif transition == Transition.DELETE:
                        pipe.delete(key)
                    pipe.execute()

                    return result

            except WatchError:
                logger.debug(f"Watch conflict on challenge {challenge_id}, attempt {attempt + 1}")
                continue
            except RedisError as e:
                logger.error(f"Redis error on challenge update {challenge_id}: {e}")
                raise StorageUnavailableError(str(e)) from e

        logger.warning(f"Max retries exceeded for challenge update {challenge_id}")
        raise StorageUnavailableError(f"challenge {challenge_id} kept conflicting")

    def sweep_expired(self, now: float) -> int:
        removed = 0
        try:
            for key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*"):
                challenge = self._decode(self.client.get(key))
                if challenge is None or challenge.is_expired(now):
                    removed += self.client.delete(key)
        except RedisError as e:
            logger.warning(f"Challenge sweep failed: {e}")
        return removed

    def all(self) -> List[Challenge]:
        challenges: List[Challenge] = []
        try:
            for key in self.client.scan_iter(match=f"{self.KEY_PREFIX}*"):
                challenge = self._decode(self.client.get(key))
                if challenge is not None:
                    challenges.append(challenge)
        except RedisError as e:
            logger.error(f"Failed to list challenges: {e}")
            raise StorageUnavailableError(str(e)) from e
        return challenges

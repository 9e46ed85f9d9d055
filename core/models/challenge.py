"""
Keystroke Gate Challenge Manager

Step-up challenge lifecycle for ambiguous login attempts.

State machine per challenge:
    PENDING → COMPLETED  (correct solution)
            → EXPIRED    (now > expires_at)
            → EXHAUSTED  (max_attempts reached without success)

Challenge kinds are a tagged variant: every ChallengeType has exactly one
generator and one verifier in the tables below, and the module refuses to
import if a kind is missing from either table.
"""

from __future__ import annotations

import logging
import random
import re
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from core.schemas.outputs import ChallengePublicView, ChallengeStatus, ChallengeType
from persistence.challenge_store import (
    Challenge,
    ChallengeStore,
    InMemoryChallengeStore,
    Transition,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Verification Results
# =============================================================================

class RejectReason(str, Enum):
    """Why a verification was rejected outright."""
    NOT_FOUND = "not found"
    EXPIRED = "expired"
    ALREADY_COMPLETED = "already completed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Accepted:
    """Correct solution; the challenge is now completed."""
    owner_identity: str
    challenge_type: ChallengeType
    attempts: int


@dataclass(frozen=True)
class Retry:
    """Incorrect solution with attempts left."""
    attempts_remaining: int


@dataclass(frozen=True)
class Rejected:
    """Terminal rejection; the caller should deny."""
    reason: RejectReason

    @property
    def message(self) -> str:
        return f"Challenge {self.reason.value}"


VerifyResult = Union[Accepted, Retry, Rejected]


# =============================================================================
# Challenge Content Generators
# =============================================================================

class ChallengeContent(NamedTuple):
    prompt: str
    answer: str
    hints: List[str]


_PATTERNS: List[Tuple[List[int], int, str]] = [
    ([2, 4, 6, 8], 10, "even numbers"),
    ([1, 3, 5, 7], 9, "odd numbers"),
    ([1, 4, 7, 10], 13, "add 3"),
    ([2, 6, 18, 54], 162, "multiply by 3"),
    ([1, 1, 2, 3, 5], 8, "Fibonacci"),
]

_MEMORY_WORDS = ["apple", "bridge", "candle", "dragon", "eagle", "forest", "guitar", "house"]

_ORDINALS = ["", "first", "second", "third", "fourth", "fifth", "sixth"]

# Excludes the easily confused O, 0, 1 and I
_CAPTCHA_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

_CAPTCHA_DISTORTIONS = [
    "slightly rotated",
    "with wavy lines",
    "with dots in background",
    "in cursive style",
    "with strikethrough",
]

_SECURITY_QUESTIONS = [
    ("What was the name of your first pet?", "buddy"),
    ("What is your mother's maiden name?", "smith"),
    ("What was the make of your first car?", "toyota"),
    ("What city were you born in?", "denver"),
    ("What was your favorite subject in school?", "mathematics"),
]


def _ordinal(n: int) -> str:
    return _ORDINALS[n] if n < len(_ORDINALS) else f"{n}th"


def _math_challenge(rng: random.Random) -> ChallengeContent:
    operation = rng.choice(["+", "-", "*"])
    if operation == "+":
        a, b = rng.randint(10, 59), rng.randint(10, 59)
        answer, symbol = a + b, "+"
    elif operation == "-":
        a, b = rng.randint(50, 99), rng.randint(10, 39)
        answer, symbol = a - b, "-"
    else:
        a, b = rng.randint(2, 13), rng.randint(2, 13)
        answer, symbol = a * b, "×"
    return ChallengeContent(f"What is {a} {symbol} {b}?", str(answer), [])


def _pattern_challenge(rng: random.Random) -> ChallengeContent:
    sequence, nxt, rule = rng.choice(_PATTERNS)
    joined = ", ".join(str(n) for n in sequence)
    return ChallengeContent(
        f"What is the next number in this sequence: {joined}, ?",
        str(nxt),
        [f"Hint: {rule}"],
    )


def _memory_challenge(rng: random.Random) -> ChallengeContent:
    sequence = rng.sample(_MEMORY_WORDS, rng.randint(4, 6))
    target = rng.randrange(len(sequence))
    prompt = (
        f'Remember this sequence: "{" - ".join(sequence)}". '
        f"What was the {_ordinal(target + 1)} word?"
    )
    return ChallengeContent(prompt, sequence[target], [])


def _captcha_challenge(rng: random.Random) -> ChallengeContent:
    captcha = "".join(rng.choice(_CAPTCHA_ALPHABET) for _ in range(5))
    distortion = rng.choice(_CAPTCHA_DISTORTIONS)
    return ChallengeContent(
        f"Type the following characters ({distortion}): {captcha}",
        captcha,
        [],
    )


def _security_question_challenge(rng: random.Random) -> ChallengeContent:
    question, answer = rng.choice(_SECURITY_QUESTIONS)
    return ChallengeContent(
        f"{question} (This is a demo - any reasonable answer will work)",
        answer,
        [],
    )


# =============================================================================
# Solution Verifiers
# =============================================================================

_STOP_WORDS = re.compile(r"\b(the|a|an|and|or|but|in|on|at|to|for|of|with|by)\b")
_PLAIN_NUMBER = re.compile(r"^[+-]?([0-9]+(\.[0-9]*)?|\.[0-9]+)$")

FUZZY_SIMILARITY_THRESHOLD = 0.80


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with unit-cost insertion, deletion and substitution."""
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - distance / longer length, in [0, 1]."""
    longest = max(len(a), len(b)) or 1
    return 1.0 - levenshtein_distance(a, b) / longest


def normalize_answer(text: str) -> str:
    """Lowercase, strip punctuation and stop words, collapse whitespace."""
    text = re.sub(r"[^a-z0-9\s]", "", text.lower())
    text = _STOP_WORDS.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def fuzzy_match(solution: str, answer: str) -> bool:
    """
    Lenient comparison for free-text answers.

    Accepts an exact normalized match, containment in either direction,
    or an edit-distance similarity of at least 0.80.
    """
    sol = normalize_answer(solution)
    ans = normalize_answer(answer)
    if not sol:
        return False
    if sol == ans:
        return True
    if sol in ans or ans in sol:
        return True
    return similarity(sol, ans) >= FUZZY_SIMILARITY_THRESHOLD


def _exact_match(solution: str, answer: str) -> bool:
    return solution.strip().lower() == answer.strip().lower()


def _numeric_match(solution: str, answer: str) -> bool:
    solution, answer = solution.strip(), answer.strip()
    if not (_PLAIN_NUMBER.match(solution) and _PLAIN_NUMBER.match(answer)):
        return False
    return float(solution) == float(answer)


_GENERATORS: Dict[ChallengeType, Callable[[random.Random], ChallengeContent]] = {
    ChallengeType.MATH: _math_challenge,
    ChallengeType.PATTERN: _pattern_challenge,
    ChallengeType.MEMORY: _memory_challenge,
    ChallengeType.CAPTCHA: _captcha_challenge,
    ChallengeType.SECURITY_QUESTION: _security_question_challenge,
}

_VERIFIERS: Dict[ChallengeType, Callable[[str, str], bool]] = {
    ChallengeType.MATH: _numeric_match,
    ChallengeType.PATTERN: _exact_match,
    ChallengeType.MEMORY: _exact_match,
    ChallengeType.CAPTCHA: _exact_match,
    ChallengeType.SECURITY_QUESTION: fuzzy_match,
}

for _table in (_GENERATORS, _VERIFIERS):
    _missing = set(ChallengeType) - set(_table)
    if _missing:
        raise RuntimeError(f"Challenge kinds without handler: {sorted(m.value for m in _missing)}")


def verify_solution(challenge_type: ChallengeType, solution: str, answer: str) -> bool:
    """Dispatch to the verifier for ``challenge_type``; malformed input never matches."""
    if not isinstance(solution, str):
        return False
    return _VERIFIERS[challenge_type](solution, answer)


# =============================================================================
# Challenge Manager
# =============================================================================

class ChallengeManager:
    """
    Creates time-boxed challenges and governs their verification.

    Storage, randomness and time are injected so tests can pin prompts,
    answers and expiry.
    """

    CHALLENGE_TTL_SECONDS: int = 300
    MAX_ATTEMPTS: int = 3

    def __init__(
        self,
        store: Optional[ChallengeStore] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store or InMemoryChallengeStore()
        self._rng = rng or random.Random()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create(
        self,
        owner_identity: str,
        challenge_type: Optional[ChallengeType] = None
    ) -> ChallengePublicView:
        """Create a challenge for ``owner_identity``; random kind if unspecified."""
        kind = challenge_type or self._rng.choice(list(ChallengeType))
        content = _GENERATORS[kind](self._rng)
        now = self._clock()

        challenge = Challenge(
            id=str(uuid.uuid4()),
            owner_identity=owner_identity,
            type=kind,
            prompt=content.prompt,
            expected_answer=content.answer,
            hints=list(content.hints),
            created_at=now,
            expires_at=now + self.CHALLENGE_TTL_SECONDS,
            max_attempts=self.MAX_ATTEMPTS,
        )
        self.store.put(challenge)
        self.sweep_expired()

        logger.info(f"Challenge created: {kind.value} for {owner_identity} ({challenge.id})")

        return ChallengePublicView(
            id=challenge.id,
            type=kind,
            prompt=challenge.prompt,
            hints=challenge.hints,
            expires_in=self.CHALLENGE_TTL_SECONDS,
        )

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify(self, challenge_id: str, solution: str) -> VerifyResult:
        """
        Check a solution against a stored challenge.

        Order of checks: unknown id, expiry, already completed, attempts
        exhausted; only then is an attempt consumed and the solution compared.
        """
        now = self._clock()

        def transition(challenge: Optional[Challenge]) -> Tuple[Transition, VerifyResult]:
            if challenge is None:
                return Transition.KEEP, Rejected(RejectReason.NOT_FOUND)
            if challenge.is_expired(now):
                return Transition.DELETE, Rejected(RejectReason.EXPIRED)
            if challenge.completed:
                return Transition.KEEP, Rejected(RejectReason.ALREADY_COMPLETED)
            if challenge.attempts >= challenge.max_attempts:
                return Transition.DELETE, Rejected(RejectReason.EXHAUSTED)

            challenge.attempts += 1

            if verify_solution(challenge.type, solution, challenge.expected_answer):
                challenge.completed = True
                return Transition.SAVE, Accepted(
                    owner_identity=challenge.owner_identity,
                    challenge_type=challenge.type,
                    attempts=challenge.attempts,
                )
            if challenge.attempts >= challenge.max_attempts:
                return Transition.DELETE, Rejected(RejectReason.EXHAUSTED)
            return Transition.SAVE, Retry(challenge.max_attempts - challenge.attempts)

        result = self.store.update_atomic(challenge_id, transition)

        if isinstance(result, Accepted):
            logger.info(
                f"Challenge completed: {challenge_id} "
                f"({result.challenge_type.value}, attempts={result.attempts})"
            )
        elif isinstance(result, Retry):
            logger.warning(
                f"Challenge verification failed - incorrect solution: {challenge_id} "
                f"(remaining={result.attempts_remaining})"
            )
        else:
            logger.warning(f"Challenge verification rejected - {result.reason.value}: {challenge_id}")

        return result

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Remove every expired challenge; returns how many were dropped."""
        removed = self.store.sweep_expired(self._clock())
        if removed:
            logger.debug(f"Cleaned up {removed} expired challenges")
        return removed

    def status(self) -> ChallengeStatus:
        """Active challenge count and average attempts."""
        challenges = self.store.all()
        average = (
            sum(c.attempts for c in challenges) / len(challenges)
            if challenges else 0.0
        )
        return ChallengeStatus(
            active_challenges=len(challenges),
            challenge_types=list(ChallengeType),
            average_attempts=average,
        )

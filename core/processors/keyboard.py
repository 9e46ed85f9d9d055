"""
Keystroke Gate Keyboard Processor

Stateful feature engineering for keyboard biometrics.
Pairs key-press/key-release events into hold and flight samples and
derives the 8-component session feature vector consumed by the
local risk estimator and the fusion engine.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from core.schemas.inputs import KeyboardEvent, KeyEventType


# =============================================================================
# Constants
# =============================================================================

# Characters per word for WPM computation
CHARS_PER_WORD = 5

# Keys that never open a hold/flight record
IGNORED_KEYS = frozenset({
    "Shift", "Control", "Alt", "Meta", "CapsLock", "Tab", "Escape", "Enter",
    "ArrowUp", "ArrowDown", "ArrowLeft", "ArrowRight",
    "Home", "End", "PageUp", "PageDown", "Insert",
})

# Keys that indicate a typing correction
CORRECTION_KEYS = frozenset({"Backspace", "Delete"})

_FUNCTION_KEY = re.compile(r"^F([1-9]|1[0-9]|2[0-4])$")

FEATURE_NAMES: Tuple[str, ...] = (
    "hold_time_mean",
    "flight_time_mean",
    "hold_time_std",
    "flight_time_std",
    "typing_speed",
    "error_rate",
    "consistency_score",
    "keystroke_count",
)


# =============================================================================
# Statistics Helpers
# =============================================================================

def mean(values: Iterable[float]) -> float:
    """Arithmetic mean, 0.0 for an empty sequence."""
    values = list(values)
    if not values:
        return 0.0
    return sum(values) / len(values)


def variance(values: Iterable[float]) -> float:
    """Population variance, 0.0 for an empty sequence."""
    values = list(values)
    if not values:
        return 0.0
    avg = mean(values)
    return sum((x - avg) ** 2 for x in values) / len(values)


def consistency_score(hold_times: List[float], flight_times: List[float]) -> float:
    """
    Map hold/flight timing variance onto a 0-100 consistency score.

    Each variance contributes ``max(0, 100 - variance / 10)``; the score is
    the mean of both terms. Fewer than two hold samples score 0.
    """
    if len(hold_times) < 2:
        return 0.0
    hold_var = variance(hold_times)
    flight_var = variance(flight_times) if len(flight_times) > 1 else 0.0
    hold_term = min(100.0, max(0.0, 100.0 - hold_var / 10.0))
    flight_term = min(100.0, max(0.0, 100.0 - flight_var / 10.0))
    return (hold_term + flight_term) / 2.0


# =============================================================================
# Feature Vector
# =============================================================================

@dataclass(frozen=True)
class FeatureVector:
    """
    Immutable per-session keystroke feature vector.

    The 8 statistical components are what the local model scores; the
    raw hold/flight sequences travel along because the fusion engine
    compares their variance and first differences against the baseline.
    """
    hold_time_mean: float
    flight_time_mean: float
    hold_time_std: float
    flight_time_std: float
    typing_speed: float
    error_rate: float
    consistency_score: float
    keystroke_count: int
    hold_times: Tuple[float, ...] = field(default=(), repr=False)
    flight_times: Tuple[float, ...] = field(default=(), repr=False)

    @classmethod
    def from_samples(
        cls,
        hold_times: Iterable[float],
        flight_times: Iterable[float],
        error_rate: float,
        typing_speed: float,
    ) -> "FeatureVector":
        """Build a vector from already-paired hold/flight samples."""
        holds = tuple(float(h) for h in hold_times)
        flights = tuple(float(f) for f in flight_times)
        return cls(
            hold_time_mean=mean(holds),
            flight_time_mean=mean(flights),
            hold_time_std=math.sqrt(variance(holds)),
            flight_time_std=math.sqrt(variance(flights)),
            typing_speed=float(typing_speed),
            error_rate=float(error_rate),
            consistency_score=consistency_score(list(holds), list(flights)),
            keystroke_count=len(holds),
            hold_times=holds,
            flight_times=flights,
        )

    def as_dict(self) -> Dict[str, float]:
        """The 8 statistical components keyed by feature name."""
        return {name: float(getattr(self, name)) for name in FEATURE_NAMES}

    def as_array(self) -> List[float]:
        """The 8 statistical components in canonical order."""
        return [float(getattr(self, name)) for name in FEATURE_NAMES]


# =============================================================================
# Internal Data Structures
# =============================================================================

@dataclass
class RawKeyEvent:
    """Capture record for a key that is currently held down."""
    key: str
    press_time: float
    release_time: Optional[float] = None
    # Next key pressed while this one was still down; its flight is
    # resolved when this key is released
    next_press: Optional["RawKeyEvent"] = field(default=None, repr=False, compare=False)


# =============================================================================
# Keyboard Processor
# =============================================================================

class KeyboardProcessor:
    """
    Converts raw key-press/key-release events into a FeatureVector.

    Features extracted:
    - hold_time_mean / hold_time_std: time keys are held down (ms)
    - flight_time_mean / flight_time_std: release of key n-1 to press of key n (ms)
    - typing_speed: words per minute (5 keystrokes per word)
    - error_rate: corrections as a percentage of keystrokes
    - consistency_score: 0-100, inverse of timing variance
    - keystroke_count: non-correction keystrokes seen

    Modifier and navigation keys are ignored. Backspace/Delete count as
    corrections and open no record. This class performs no I/O.
    """

    def __init__(self, session_start: Optional[float] = None) -> None:
        """Initialize the processor with empty state."""
        self._explicit_start = session_start
        self._held: Dict[str, RawKeyEvent] = {}
        self._hold_times: List[float] = []
        self._flight_times: List[float] = []
        self._last_pressed: Optional[RawKeyEvent] = None
        self._session_start: Optional[float] = session_start
        self._last_event_ts: Optional[float] = None
        self._keystroke_count: int = 0
        self._corrections: int = 0

    # -------------------------------------------------------------------------
    # Capture API
    # -------------------------------------------------------------------------

    @staticmethod
    def is_ignored(key: str) -> bool:
        """True for modifier, navigation and function keys."""
        return key in IGNORED_KEYS or bool(_FUNCTION_KEY.match(key))

    def on_press(self, key: str, t: float) -> None:
        """Record a key-press at timestamp ``t`` (ms)."""
        if self.is_ignored(key):
            return
        self._touch(t)

        if key in CORRECTION_KEYS:
            self._corrections += 1
            return

        # Auto-repeat while the key is still held
        if key in self._held:
            return

        record = RawKeyEvent(key=key, press_time=t)
        previous = self._last_pressed

        # First keystroke of the session has no flight time
        if previous is not None:
            if previous.release_time is not None:
                self._flight_times.append(t - previous.release_time)
            else:
                previous.next_press = record

        self._held[key] = record
        self._last_pressed = record
        self._keystroke_count += 1

    def on_release(self, key: str, t: float) -> None:
        """Record a key-release at timestamp ``t`` (ms)."""
        if self.is_ignored(key) or key in CORRECTION_KEYS:
            return

        record = self._held.pop(key, None)
        if record is None:
            return
        self._touch(t)

        record.release_time = t
        self._hold_times.append(t - record.press_time)

        # Overlapping press: negative flight
        if record.next_press is not None:
            self._flight_times.append(record.next_press.press_time - t)
            record.next_press = None

    def process_event(self, event: KeyboardEvent) -> FeatureVector:
        """
        Streaming API: apply one DOWN/UP event and return the updated vector.
        """
        if event.event_type == KeyEventType.DOWN:
            self.on_press(event.key, event.timestamp)
        elif event.event_type == KeyEventType.UP:
            self.on_release(event.key, event.timestamp)
        return self.current_features()

    def extract_features(self, events: List[KeyboardEvent]) -> FeatureVector:
        """
        Batch API: compute a vector from an unsorted list of events.

        Resets the processor first, so the result depends only on ``events``.
        """
        self.reset()
        for event in sorted(events, key=lambda e: e.timestamp):
            self.process_event(event)
        return self.current_features()

    # -------------------------------------------------------------------------
    # Feature Computation
    # -------------------------------------------------------------------------

    def current_features(self, now: Optional[float] = None) -> FeatureVector:
        """
        Recompute the feature vector from accumulated raw samples.

        Args:
            now: Timestamp (ms) used as the end of the session for typing
                speed. Defaults to the last event seen.
        """
        end = now if now is not None else self._last_event_ts
        return FeatureVector(
            hold_time_mean=mean(self._hold_times),
            flight_time_mean=mean(self._flight_times),
            hold_time_std=math.sqrt(variance(self._hold_times)),
            flight_time_std=math.sqrt(variance(self._flight_times)),
            typing_speed=self._typing_speed(end),
            error_rate=self._error_rate(),
            consistency_score=consistency_score(self._hold_times, self._flight_times),
            keystroke_count=self._keystroke_count,
            hold_times=tuple(self._hold_times),
            flight_times=tuple(self._flight_times),
        )

    def _typing_speed(self, end: Optional[float]) -> float:
        """Words per minute since session start."""
        if self._session_start is None or end is None:
            return 0.0
        elapsed_minutes = (end - self._session_start) / 1000.0 / 60.0
        if elapsed_minutes <= 0:
            return 0.0
        return (self._keystroke_count / CHARS_PER_WORD) / elapsed_minutes

    def _error_rate(self) -> float:
        """Corrections as a percentage of keystrokes."""
        if self._keystroke_count == 0:
            return 0.0
        return self._corrections / self._keystroke_count * 100.0

    def _touch(self, t: float) -> None:
        if self._session_start is None:
            self._session_start = t
        if self._last_event_ts is None or t > self._last_event_ts:
            self._last_event_ts = t

    @property
    def corrections(self) -> int:
        return self._corrections

    def reset(self) -> None:
        """Reset processor state for a new session."""
        self._held.clear()
        self._hold_times.clear()
        self._flight_times.clear()
        self._last_pressed = None
        self._session_start = self._explicit_start
        self._last_event_ts = None
        self._keystroke_count = 0
        self._corrections = 0

"""
Keystroke Gate Risk Fusion Engine

Compares a session's keystroke features against the identity's rolling
baseline and fuses six independent factors into one risk score.

This module is STATELESS and DETERMINISTIC given its inputs and clock.
Persistence of the session summary is the orchestrator's job.

Factors:
    temporal     relative drift of mean hold/flight time from history
    behavioral   error-rate delta and relative typing-speed drift
    consistency  relative drift of hold/flight variance from history
    deviation    |z-score| of hold, flight and speed against history
    velocity     variance of hold-time first differences vs. history
    client       on-device preliminary risk, passed through
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Dict, List, Optional

import numpy as np

from core.processors.keyboard import FeatureVector
from core.schemas.outputs import RiskDecision, RiskFactors
from persistence.profile_store import BiometricProfile, BiometricSampleSummary


logger = logging.getLogger(__name__)


# =============================================================================
# Engine Configuration
# =============================================================================

FACTOR_WEIGHTS: Dict[str, float] = {
    "temporal": 0.25,
    "behavioral": 0.20,
    "consistency": 0.20,
    "deviation": 0.15,
    "velocity": 0.10,
    "client": 0.10,
}

# Fixed factors for identities with no history
COLD_START_FACTORS: Dict[str, float] = {
    "temporal": 0.4,
    "behavioral": 0.4,
    "consistency": 0.5,
    "deviation": 0.3,
    "velocity": 0.3,
}
COLD_START_CONFIDENCE = 0.3

# Biased toward denial when the engine itself fails
FAILURE_SCORE = 0.8
FAILURE_CONFIDENCE = 0.0

# Returned by the velocity factor when there is nothing to compare
VELOCITY_DEFAULT = 0.3
VELOCITY_MIN_SAMPLES = 3

# Profile maturity horizons
CONFIDENCE_SAMPLE_HORIZON = 20
CONFIDENCE_DAYS_HORIZON = 30.0

# Score used when no factor is usable
NEUTRAL_SCORE = 0.5

LOW_RISK_THRESHOLD = 0.3
HIGH_RISK_THRESHOLD = 0.7

SECONDS_PER_DAY = 86400.0


# =============================================================================
# Math Helpers
# =============================================================================

def _mean(values: List[float]) -> float:
    """Mean of values, 0.0 when empty."""
    if not values:
        return 0.0
    return float(np.mean(values))


def _variance(values: List[float]) -> float:
    """Population variance, 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.var(values))


def _z_score(value: float, history: List[float]) -> float:
    """Z-score of value against history; 0 with <2 samples or zero spread."""
    if len(history) < 2:
        return 0.0
    std = math.sqrt(_variance(history))
    if std <= 0:
        return 0.0
    return (value - _mean(history)) / std


def _relative_deviation(current: float, baseline: float) -> float:
    """
    |current - baseline| / baseline.

    A zero baseline yields inf (any drift is maximal) unless the current
    value is zero too, in which case the ratio is undefined (NaN).
    """
    if baseline == 0:
        return math.nan if current == 0 else math.inf
    return abs(current - baseline) / abs(baseline)


def _cap(value: float) -> float:
    """min(value, 1) that lets NaN through."""
    if math.isnan(value):
        return value
    return min(value, 1.0)


def _unit(value: float) -> float:
    """Clamp to [0, 1], NaN unchanged."""
    if math.isnan(value):
        return value
    return max(0.0, min(1.0, value))


def hold_velocity_variance(hold_times: List[float]) -> float:
    """Variance of the first difference of the hold-time sequence."""
    return _variance(np.diff(hold_times).tolist()) if len(hold_times) > 1 else 0.0


# =============================================================================
# Risk Fusion Engine
# =============================================================================

class RiskFusionEngine:
    """
    Multi-factor risk fusion against a per-identity behavioral baseline.

    Decision bands consumed by the orchestrator:
        GRANT:   final_score < 0.3
        STEP_UP: 0.3 <= final_score <= 0.7
        DENY:    final_score > 0.7

    The engine never raises: any internal failure yields a fixed
    high-risk decision (0.8, confidence 0).
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def evaluate(
        self,
        features: FeatureVector,
        profile: Optional[BiometricProfile],
        client_risk_score: float
    ) -> RiskDecision:
        """
        Fuse session features, baseline history and the client's score.

        Args:
            features: Current session FeatureVector
            profile: Identity baseline, or None for an unknown identity
            client_risk_score: Local estimator's preliminary risk

        Returns:
            RiskDecision with final score, factors, confidence and analysis.
        """
        start = time.perf_counter()

        try:
            if profile is None or not profile.samples:
                return self._cold_start(client_risk_score)

            factors = {
                "temporal": self.temporal_risk(features, profile),
                "behavioral": self.behavioral_risk(features, profile),
                "consistency": self.consistency_risk(features, profile),
                "deviation": self.deviation_risk(features, profile),
                "velocity": self.velocity_risk(features, profile),
                "client": client_risk_score,
            }

            final_score = self.weighted_score(factors)
            confidence = self.profile_confidence(profile)
            analysis = self.generate_analysis(factors, final_score)

            logger.debug(
                f"Risk calculation completed in {(time.perf_counter() - start) * 1000:.2f}ms: "
                f"score={final_score:.3f}, confidence={confidence:.3f}, "
                f"samples={len(profile.samples)}"
            )

            return RiskDecision(
                final_score=final_score,
                factors=self._to_factors(factors),
                confidence=confidence,
                analysis=analysis,
            )

        except Exception as e:
            logger.error(f"Risk calculation failed: {e}", exc_info=True)
            return RiskDecision(
                final_score=FAILURE_SCORE,
                factors=RiskFactors(),
                confidence=FAILURE_CONFIDENCE,
                analysis="Risk calculation failed - defaulting to high risk",
            )

    def summarize(
        self,
        features: FeatureVector,
        now: Optional[float] = None
    ) -> BiometricSampleSummary:
        """Reduce a session to the compact summary stored in the baseline."""
        holds = list(features.hold_times)
        flights = list(features.flight_times)
        return BiometricSampleSummary(
            avg_hold_time=_mean(holds),
            avg_flight_time=_mean(flights),
            hold_time_variance=_variance(holds),
            flight_time_variance=_variance(flights),
            error_rate=features.error_rate,
            typing_speed=features.typing_speed,
            hold_velocity_variance=(
                hold_velocity_variance(holds)
                if len(holds) >= VELOCITY_MIN_SAMPLES else None
            ),
            timestamp=now if now is not None else self._clock(),
        )

    # -------------------------------------------------------------------------
    # Cold Start
    # -------------------------------------------------------------------------

    def _cold_start(self, client_risk_score: float) -> RiskDecision:
        factors = dict(COLD_START_FACTORS, client=client_risk_score)
        logger.debug(f"New identity risk assessment: {factors}")
        return RiskDecision(
            final_score=self.weighted_score(factors),
            factors=self._to_factors(factors),
            confidence=COLD_START_CONFIDENCE,
            analysis="New user - limited biometric data",
        )

    # -------------------------------------------------------------------------
    # Factors
    # -------------------------------------------------------------------------

    def temporal_risk(self, current: FeatureVector, profile: BiometricProfile) -> float:
        """Relative drift of mean hold/flight time, x2, each capped at 1."""
        hist_hold = _mean([s.avg_hold_time for s in profile.samples])
        hist_flight = _mean([s.avg_flight_time for s in profile.samples])

        hold_risk = _cap(_relative_deviation(_mean(list(current.hold_times)), hist_hold) * 2)
        flight_risk = _cap(_relative_deviation(_mean(list(current.flight_times)), hist_flight) * 2)

        return _unit((hold_risk + flight_risk) / 2)

    def behavioral_risk(self, current: FeatureVector, profile: BiometricProfile) -> float:
        """Error-rate delta x5 and relative speed drift x3, each capped at 1."""
        hist_error = _mean([s.error_rate for s in profile.samples])
        hist_speed = _mean([s.typing_speed for s in profile.samples])

        error_risk = _cap(abs(current.error_rate - hist_error) * 5)
        speed_risk = _cap(_relative_deviation(current.typing_speed, hist_speed) * 3)

        return _unit((error_risk + speed_risk) / 2)

    def consistency_risk(self, current: FeatureVector, profile: BiometricProfile) -> float:
        """Relative drift of session hold/flight variance from historical variance."""
        cur_hold_var = _variance(list(current.hold_times))
        cur_flight_var = _variance(list(current.flight_times))

        hist_hold_var = _mean([s.hold_time_variance or 0.0 for s in profile.samples])
        hist_flight_var = _mean([s.flight_time_variance or 0.0 for s in profile.samples])

        hold_risk = (
            abs(cur_hold_var - hist_hold_var) / hist_hold_var if hist_hold_var > 0 else 0.0
        )
        flight_risk = (
            abs(cur_flight_var - hist_flight_var) / hist_flight_var if hist_flight_var > 0 else 0.0
        )

        return _unit((hold_risk + flight_risk) / 2)

    def deviation_risk(self, current: FeatureVector, profile: BiometricProfile) -> float:
        """Mean of |z|/3 (capped at 1) for hold mean, flight mean and speed."""
        samples = profile.samples
        z_hold = _z_score(_mean(list(current.hold_times)), [s.avg_hold_time for s in samples])
        z_flight = _z_score(_mean(list(current.flight_times)), [s.avg_flight_time for s in samples])
        z_speed = _z_score(current.typing_speed, [s.typing_speed for s in samples])

        risks = [min(abs(z) / 3, 1.0) for z in (z_hold, z_flight, z_speed)]
        return _unit(sum(risks) / 3)

    def velocity_risk(self, current: FeatureVector, profile: BiometricProfile) -> float:
        """
        Rhythm smoothness: variance of hold-time first differences against
        the historical average of the same quantity.
        """
        holds = list(current.hold_times)
        if len(holds) < VELOCITY_MIN_SAMPLES or len(current.flight_times) < VELOCITY_MIN_SAMPLES:
            return VELOCITY_DEFAULT

        session_var = hold_velocity_variance(holds)
        hist_var = _mean([s.hold_velocity_variance or 0.0 for s in profile.samples])

        if hist_var <= 0:
            return VELOCITY_DEFAULT
        return _unit(abs(session_var - hist_var) / hist_var)

    # -------------------------------------------------------------------------
    # Fusion
    # -------------------------------------------------------------------------

    @staticmethod
    def weighted_score(factors: Dict[str, Optional[float]]) -> float:
        """
        Weighted mean over usable factors.

        Only numeric, non-NaN factors with a defined weight contribute; the
        divisor is the sum of weights actually used. 0.5 when none usable.
        """
        weighted_sum = 0.0
        total_weight = 0.0

        for name, value in factors.items():
            weight = FACTOR_WEIGHTS.get(name)
            if not weight or not isinstance(value, (int, float)) or isinstance(value, bool):
                continue
            if math.isnan(value):
                continue
            weighted_sum += value * weight
            total_weight += weight

        if total_weight <= 0:
            return NEUTRAL_SCORE
        return max(0.0, min(1.0, weighted_sum / total_weight))

    def profile_confidence(self, profile: BiometricProfile) -> float:
        """Mean of sample-count maturity and time-span maturity."""
        sample_confidence = min(len(profile.samples) / CONFIDENCE_SAMPLE_HORIZON, 1.0)
        days = (self._clock() - profile.created_at) / SECONDS_PER_DAY
        time_confidence = max(0.0, min(days / CONFIDENCE_DAYS_HORIZON, 1.0))
        return (sample_confidence + time_confidence) / 2

    @staticmethod
    def generate_analysis(factors: Dict[str, Optional[float]], final_score: float) -> str:
        """One-line human summary naming the strongest non-client factor."""
        if final_score < LOW_RISK_THRESHOLD:
            level = "Low"
        elif final_score < HIGH_RISK_THRESHOLD:
            level = "Medium"
        else:
            level = "High"

        candidates = [
            (name, value) for name, value in factors.items()
            if name != "client" and value is not None and not math.isnan(value)
        ]
        if not candidates:
            return f"{level} risk detected."

        name, value = max(candidates, key=lambda item: item[1])
        return f"{level} risk detected. Primary concern: {name} ({value * 100:.1f}%)"

    @staticmethod
    def _to_factors(factors: Dict[str, Optional[float]]) -> RiskFactors:
        return RiskFactors(**{
            name: (None if value is None or math.isnan(value) else float(value))
            for name, value in factors.items()
        })

"""
Keystroke Gate Local Risk Estimator

River-based preliminary risk model for a single typing session.
Maps the 8-component FeatureVector to a risk probability, a heuristic
confidence, and a GRANT / STEP_UP / DENY recommendation.

The model is trained on a synthetic reference distribution of legitimate
and anomalous sessions. Training can run on a background thread; until
it finishes every score is the fixed moderate-risk fallback.
"""

import logging
import random
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

import numpy as np
from river import linear_model, metrics, optim
from river.base import Transformer

from core.processors.keyboard import FEATURE_NAMES, FeatureVector


logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================

class Recommendation(str, Enum):
    GRANT = "GRANT"
    STEP_UP = "STEP_UP"
    DENY = "DENY"


@dataclass(frozen=True)
class RiskEstimate:
    """Preliminary on-device risk for one session."""
    risk_score: float
    confidence: float
    recommendation: Recommendation


FALLBACK_ESTIMATE = RiskEstimate(
    risk_score=0.5,
    confidence=0.1,
    recommendation=Recommendation.STEP_UP,
)


class RiskModel(Protocol):
    """Anything that can score a FeatureVector."""

    def score(self, features: FeatureVector) -> RiskEstimate:
        ...

    def is_ready(self) -> bool:
        ...


# =============================================================================
# Reference Distribution
# =============================================================================

# (low, width) uniform ranges per feature, in FEATURE_NAMES order
_LEGITIMATE_RANGES: Tuple[Tuple[float, float], ...] = (
    (80.0, 40.0),   # hold mean 80-120ms
    (50.0, 30.0),   # flight mean 50-80ms
    (15.0, 10.0),
    (20.0, 15.0),
    (40.0, 20.0),   # 40-60 WPM
    (1.0, 3.0),     # 1-4% errors
    (70.0, 25.0),
    (50.0, 50.0),
)

_ANOMALOUS_RANGES: Tuple[Tuple[float, float], ...] = (
    (30.0, 200.0),  # erratic holds
    (10.0, 100.0),
    (50.0, 100.0),
    (40.0, 80.0),
    (100.0, 50.0),  # abnormal speed
    (10.0, 20.0),   # high error rate
    (10.0, 40.0),   # low consistency
    (20.0, 30.0),
)

STD_EPSILON = 1e-7


class ReferenceDistribution:
    """
    Synthetic labelled sessions plus the per-feature normalization
    parameters derived from them.

    Label True means anomalous.
    """

    def __init__(self, samples_per_class: int = 100, seed: Optional[int] = None) -> None:
        rng = random.Random(seed)
        self.samples: List[Tuple[Dict[str, float], bool]] = []

        for ranges, label in ((_LEGITIMATE_RANGES, False), (_ANOMALOUS_RANGES, True)):
            for _ in range(samples_per_class):
                row = [low + rng.random() * width for low, width in ranges]
                self.samples.append((dict(zip(FEATURE_NAMES, row)), label))

        matrix = np.array([[x[name] for name in FEATURE_NAMES] for x, _ in self.samples])
        self.mean: Dict[str, float] = dict(zip(FEATURE_NAMES, matrix.mean(axis=0).tolist()))
        self.std: Dict[str, float] = dict(
            zip(FEATURE_NAMES, (matrix.std(axis=0) + STD_EPSILON).tolist())
        )


class ReferenceStandardScaler(Transformer):
    """
    Standard scaler with frozen mean/std taken from a ReferenceDistribution.

    Unknown features pass through unchanged.
    """

    def __init__(self, mean: Dict[str, float], std: Dict[str, float]) -> None:
        self.mean = mean
        self.std = std

    def learn_one(self, x: Dict[str, float]) -> "ReferenceStandardScaler":
        """No-op: parameters are fixed."""
        return self

    def transform_one(self, x: Dict[str, float]) -> Dict[str, float]:
        scaled: Dict[str, float] = {}
        for name, value in x.items():
            if name in self.mean:
                scaled[name] = (value - self.mean[name]) / self.std[name]
            else:
                scaled[name] = value
        return scaled


# =============================================================================
# Local Risk Estimator
# =============================================================================

class LocalRiskEstimator:
    """
    Preliminary risk model: ReferenceStandardScaler -> LogisticRegression.

    Recommendation rules:
        confidence < 0.5        -> STEP_UP
        risk < 0.3              -> GRANT
        risk > 0.7              -> DENY
        otherwise               -> STEP_UP

    Scoring never blocks on training and never raises.
    """

    DEFAULT_EPOCHS: int = 50
    LEARNING_RATE: float = 0.05

    _MIN_CONFIDENCE: float = 0.1

    def __init__(
        self,
        reference: Optional[ReferenceDistribution] = None,
        seed: Optional[int] = 42
    ) -> None:
        self._seed = seed
        self._reference = reference or ReferenceDistribution(seed=seed)
        self._scaler = ReferenceStandardScaler(self._reference.mean, self._reference.std)
        self._model = linear_model.LogisticRegression(optimizer=optim.SGD(self.LEARNING_RATE))

        self._ready = threading.Event()
        self._model_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Training
    # -------------------------------------------------------------------------

    def train(self, epochs: int = DEFAULT_EPOCHS) -> None:
        """Fit the model on the reference distribution (blocking)."""
        rng = random.Random(self._seed)
        samples = list(self._reference.samples)

        with self._model_lock:
            for epoch in range(epochs):
                rng.shuffle(samples)
                for x, y in samples:
                    self._model.learn_one(self._scaler.transform_one(x), y)
                if epoch % 10 == 0:
                    logger.debug(f"Local model epoch {epoch}/{epochs}")

        self._ready.set()
        logger.info(f"Local risk model trained on {len(samples)} samples ({epochs} epochs)")

    def start_training(self, epochs: int = DEFAULT_EPOCHS) -> threading.Thread:
        """Train on a daemon thread; returns the thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread

        def _run() -> None:
            try:
                self.train(epochs)
            except Exception as e:
                logger.error(f"Local model training failed: {e}", exc_info=True)

        self._thread = threading.Thread(target=_run, name="local-risk-training", daemon=True)
        self._thread.start()
        return self._thread

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until trained or ``timeout`` seconds pass. Returns readiness."""
        return self._ready.wait(timeout)

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def score(self, features: FeatureVector) -> RiskEstimate:
        """
        Score one session.

        Returns the fallback estimate (0.5 / 0.1 / STEP_UP) when the model
        is not trained yet or scoring fails.
        """
        if not self.is_ready():
            return FALLBACK_ESTIMATE

        try:
            x = self._scaler.transform_one(features.as_dict())
            with self._model_lock:
                proba = self._model.predict_proba_one(x)
            risk = float(min(1.0, max(0.0, proba.get(True, 0.5))))
        except Exception as e:
            logger.error(f"Local risk scoring failed: {e}", exc_info=True)
            return FALLBACK_ESTIMATE

        confidence = self.confidence(features)
        return RiskEstimate(
            risk_score=risk,
            confidence=confidence,
            recommendation=self.recommend(risk, confidence),
        )

    @classmethod
    def confidence(cls, features: FeatureVector) -> float:
        """Heuristic trust in the score, lowered by out-of-range features."""
        confidence = 1.0

        if features.hold_time_mean < 20 or features.hold_time_mean > 300:
            confidence *= 0.8
        if features.flight_time_mean < 10 or features.flight_time_mean > 500:
            confidence *= 0.8
        if features.typing_speed < 10 or features.typing_speed > 200:
            confidence *= 0.7
        if features.error_rate > 20:
            confidence *= 0.6
        if features.consistency_score < 30:
            confidence *= 0.7

        return max(cls._MIN_CONFIDENCE, confidence)

    @staticmethod
    def recommend(risk_score: float, confidence: float) -> Recommendation:
        if confidence < 0.5:
            return Recommendation.STEP_UP
        if risk_score < 0.3:
            return Recommendation.GRANT
        if risk_score > 0.7:
            return Recommendation.DENY
        return Recommendation.STEP_UP

    def model_metrics(self) -> Optional[Dict[str, float]]:
        """Accuracy and log loss over the reference distribution, None if untrained."""
        if not self.is_ready():
            return None

        accuracy = metrics.Accuracy()
        log_loss = metrics.LogLoss()
        with self._model_lock:
            for x, y in self._reference.samples:
                scaled = self._scaler.transform_one(x)
                proba = self._model.predict_proba_one(scaled)
                accuracy.update(y, proba.get(True, 0.0) >= 0.5)
                log_loss.update(y, proba.get(True, 0.0))

        return {"accuracy": accuracy.get(), "loss": log_loss.get()}

"""
Keystroke Gate Core Models

Local risk estimation, server-side risk fusion and step-up challenges.
"""

from core.models.challenge import (
    Accepted,
    ChallengeManager,
    Rejected,
    RejectReason,
    Retry,
    VerifyResult,
)
from core.models.fusion import FACTOR_WEIGHTS, RiskFusionEngine
from core.models.local_risk import (
    LocalRiskEstimator,
    Recommendation,
    ReferenceDistribution,
    RiskEstimate,
    RiskModel,
)

__all__ = [
    "Accepted",
    "ChallengeManager",
    "Rejected",
    "RejectReason",
    "Retry",
    "VerifyResult",
    "FACTOR_WEIGHTS",
    "RiskFusionEngine",
    "LocalRiskEstimator",
    "Recommendation",
    "ReferenceDistribution",
    "RiskEstimate",
    "RiskModel",
]

"""
Keystroke Gate Schemas

Public exports for input and output Pydantic models.
"""

# Input schemas
from core.schemas.inputs import (
    BiometricFeaturesPayload,
    KeyboardEvent,
    KeyEventType,
    LocalRiskRequest,
    LoginRequest,
    StepUpRequest,
)

# Output schemas
from core.schemas.outputs import (
    AuthAction,
    ChallengeType,
    ChallengePublicView,
    ChallengeStatus,
    LocalRiskResponse,
    LoginResponse,
    RiskDecision,
    RiskFactors,
    StepUpResponse,
)

__all__ = [
    # Input
    "KeyEventType",
    "KeyboardEvent",
    "BiometricFeaturesPayload",
    "LoginRequest",
    "LocalRiskRequest",
    "StepUpRequest",
    # Output
    "AuthAction",
    "ChallengeType",
    "RiskFactors",
    "RiskDecision",
    "ChallengePublicView",
    "ChallengeStatus",
    "LoginResponse",
    "LocalRiskResponse",
    "StepUpResponse",
]

"""
Keystroke Gate Output Schemas

This module defines Pydantic V2 models for risk decisions and the
JSON contract returned by the auth endpoints.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Enums
# =============================================================================

class AuthAction(str, Enum):
    """Outcome of a login or step-up request."""
    GRANT = "GRANT"
    STEP_UP = "STEP_UP"
    DENY = "DENY"
    RETRY = "RETRY"


class ChallengeType(str, Enum):
    """Kinds of step-up challenge."""
    MATH = "math"
    PATTERN = "pattern"
    MEMORY = "memory"
    CAPTCHA = "captcha"
    SECURITY_QUESTION = "security_question"


# =============================================================================
# Risk Decision
# =============================================================================

class RiskFactors(BaseModel):
    """
    Independent risk factors computed for one attempt.

    A factor is None when it could not be computed (for example both the
    session value and the historical baseline are zero); such factors do
    not take part in fusion.
    """
    temporal: Optional[float] = Field(None, ge=0.0, le=1.0)
    behavioral: Optional[float] = Field(None, ge=0.0, le=1.0)
    consistency: Optional[float] = Field(None, ge=0.0, le=1.0)
    deviation: Optional[float] = Field(None, ge=0.0, le=1.0)
    velocity: Optional[float] = Field(None, ge=0.0, le=1.0)
    client: Optional[float] = Field(None, ge=0.0, le=1.0)


class RiskDecision(BaseModel):
    """Fused risk assessment for a single login attempt (never persisted)."""
    final_score: float = Field(..., ge=0.0, le=1.0, description="0.0 (safe) to 1.0 (high risk)")
    factors: RiskFactors
    confidence: float = Field(..., ge=0.0, le=1.0)
    analysis: str = Field(..., description="Human-readable summary")


# =============================================================================
# Challenges
# =============================================================================

class ChallengePublicView(BaseModel):
    """Challenge as shown to the user; never includes the expected answer."""
    id: str
    type: ChallengeType
    prompt: str
    hints: List[str] = Field(default_factory=list)
    expires_in: int = Field(..., description="Seconds until the challenge expires")


class ChallengeStatus(BaseModel):
    """Admin view over the challenge store."""
    active_challenges: int
    challenge_types: List[ChallengeType]
    average_attempts: float


# =============================================================================
# Auth Responses
# =============================================================================

class LoginResponse(BaseModel):
    """Response for /auth/login."""
    success: bool
    action: AuthAction
    message: str
    risk_score: float = Field(..., ge=0.0, le=1.0)
    session_token: Optional[str] = None
    challenge: Optional[ChallengePublicView] = None


class StepUpResponse(BaseModel):
    """Response for /auth/step-up."""
    success: bool
    action: AuthAction
    message: str
    session_token: Optional[str] = None
    attempts_remaining: Optional[int] = None


class LocalRiskResponse(BaseModel):
    """Preliminary risk for a captured session, as the client would compute it."""
    risk_score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    recommendation: AuthAction
    trained: bool
    features: Dict[str, float]

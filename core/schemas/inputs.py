"""
Keystroke Gate Input Schemas

This module defines Pydantic V2 models for:
- Raw keyboard events captured on the client
- The biometric feature payload sent with a login attempt
- Login and step-up request bodies

Validation failures here are the InputError branch: malformed feature
payloads are rejected before they reach the fusion engine.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class KeyEventType(str, Enum):
    """Keyboard event type for hold/flight time calculation."""
    DOWN = "DOWN"
    UP = "UP"


# =============================================================================
# Biometric Event Models
# =============================================================================

class KeyboardEvent(BaseModel):
    """Single keyboard event captured by the client wrapper."""
    key: str = Field(..., min_length=1, description="Key name as reported by the client")
    event_type: KeyEventType = Field(..., description="DOWN or UP event")
    timestamp: float = Field(..., ge=0.0, description="Event timestamp in milliseconds")


class BiometricFeaturesPayload(BaseModel):
    """
    Session timing summary submitted with a login attempt.

    Hold and flight times are the raw per-keystroke samples in milliseconds;
    error rate is the percentage of keystrokes that were corrections.
    """
    hold_times: List[float] = Field(..., min_length=1, description="Per-key hold times (ms)")
    flight_times: List[float] = Field(default_factory=list, description="Inter-key flight times (ms)")
    error_rate: float = Field(..., ge=0.0, le=100.0, description="Correction percentage")
    typing_speed: float = Field(..., ge=0.0, description="Words per minute")
    timestamp: float = Field(..., description="Client capture time (epoch ms)")

    @field_validator("hold_times", "flight_times")
    @classmethod
    def no_negative_timings(cls, v: List[float]) -> List[float]:
        if any(t < 0 for t in v):
            raise ValueError("timings must be non-negative")
        return v


# =============================================================================
# Auth Requests
# =============================================================================

class LoginRequest(BaseModel):
    """Credential check plus behavioral evidence for one login attempt."""
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=100)
    risk_score: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Preliminary risk from the on-device estimator"
    )
    features: BiometricFeaturesPayload

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        return v.strip()


class StepUpRequest(BaseModel):
    """Answer to a step-up challenge."""
    challenge_id: str = Field(..., min_length=1)
    solution: str = Field(..., min_length=1)
    features: Optional[BiometricFeaturesPayload] = Field(
        None,
        description="Keystroke timing captured while answering, if any"
    )


class LocalRiskRequest(BaseModel):
    """Raw keystroke events to score with the local risk model."""
    events: List[KeyboardEvent] = Field(..., min_length=1)
    session_start: Optional[float] = Field(
        None,
        ge=0.0,
        description="Session start (ms); defaults to the first key press"
    )

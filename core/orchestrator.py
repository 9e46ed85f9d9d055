"""
Keystroke Gate Auth Orchestrator

Composes one authentication attempt:
    credentials → FeatureVector → baseline → fusion → decision

Decision bands on the fused score:
    < 0.3          GRANT    (session token issued)
    0.3 .. 0.7     STEP_UP  (challenge created)
    > 0.7          DENY

Every non-denied attempt appends a summary to the identity's baseline.
The orchestrator holds no state of its own; stores are injected.
"""

from __future__ import annotations

import logging
import secrets
from typing import Mapping, Optional, Protocol

from core.models.challenge import Accepted, ChallengeManager, Retry
from core.models.fusion import RiskFusionEngine
from core.processors.keyboard import FeatureVector
from core.schemas.inputs import BiometricFeaturesPayload, LoginRequest, StepUpRequest
from core.schemas.outputs import AuthAction, LoginResponse, RiskDecision, StepUpResponse
from persistence.connection import StorageUnavailableError
from persistence.profile_store import ProfileStore


logger = logging.getLogger(__name__)

__all__ = [
    "AuthOrchestrator",
    "CredentialVerifier",
    "TokenIssuer",
    "StaticCredentialVerifier",
    "OpaqueTokenIssuer",
    "InvalidCredentialsError",
    "StorageUnavailableError",
    "GRANT_THRESHOLD",
    "DENY_THRESHOLD",
    "STEP_UP_TOKEN_RISK",
]


# =============================================================================
# Constants
# =============================================================================

GRANT_THRESHOLD = 0.3
DENY_THRESHOLD = 0.7

# Risk recorded on tokens issued after a passed challenge
STEP_UP_TOKEN_RISK = 0.2


# =============================================================================
# Exceptions
# =============================================================================

class InvalidCredentialsError(Exception):
    """Raised when the username/password pair is rejected."""
    pass


# =============================================================================
# Collaborators
# =============================================================================

class CredentialVerifier(Protocol):
    def verify(self, username: str, password: str) -> bool:
        ...


class TokenIssuer(Protocol):
    def issue(self, identity: str, risk_score: float) -> str:
        ...


class StaticCredentialVerifier:
    """Checks credentials against a fixed username → password mapping."""

    def __init__(self, credentials: Mapping[str, str]) -> None:
        self._credentials = dict(credentials)

    def verify(self, username: str, password: str) -> bool:
        expected = self._credentials.get(username)
        matches = secrets.compare_digest((expected or "").encode(), password.encode())
        return expected is not None and matches


class OpaqueTokenIssuer:
    """Random url-safe tokens; signing and transport live elsewhere."""

    def __init__(self, nbytes: int = 32) -> None:
        self._nbytes = nbytes

    def issue(self, identity: str, risk_score: float) -> str:
        token = secrets.token_urlsafe(self._nbytes)
        logger.debug(f"Issued token for {identity} (risk={risk_score:.3f})")
        return token


# =============================================================================
# Orchestrator
# =============================================================================

class AuthOrchestrator:
    """Risk-adaptive login and step-up flows."""

    def __init__(
        self,
        profile_store: ProfileStore,
        challenge_manager: ChallengeManager,
        credentials: CredentialVerifier,
        tokens: Optional[TokenIssuer] = None,
        engine: Optional[RiskFusionEngine] = None,
    ) -> None:
        self.profile_store = profile_store
        self.challenge_manager = challenge_manager
        self.credentials = credentials
        self.tokens = tokens or OpaqueTokenIssuer()
        self.engine = engine or RiskFusionEngine()

    # -------------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------------

    def login(self, request: LoginRequest) -> LoginResponse:
        """
        Evaluate one login attempt.

        Raises:
            InvalidCredentialsError: username/password rejected.
            StorageUnavailableError: baseline or challenge store unreachable.
        """
        identity = request.username

        if not self.credentials.verify(identity, request.password):
            logger.warning(f"Invalid credentials for {identity}")
            raise InvalidCredentialsError("Invalid credentials")

        features = self._to_features(request.features)
        profile = self.profile_store.get(identity)
        decision = self.engine.evaluate(features, profile, request.risk_score)

        logger.info(
            f"Risk assessment for {identity}: score={decision.final_score:.3f}, "
            f"confidence={decision.confidence:.3f} - {decision.analysis}"
        )

        action = self.decide(decision)

        if action == AuthAction.DENY:
            logger.warning(f"Login denied for {identity} (score={decision.final_score:.3f})")
            return LoginResponse(
                success=False,
                action=AuthAction.DENY,
                message="Access denied due to high risk behavior",
                risk_score=decision.final_score,
            )

        self.profile_store.append(identity, self.engine.summarize(features))

        if action == AuthAction.GRANT:
            return LoginResponse(
                success=True,
                action=AuthAction.GRANT,
                message="Login successful",
                risk_score=decision.final_score,
                session_token=self.tokens.issue(identity, decision.final_score),
            )

        challenge = self.challenge_manager.create(identity)
        return LoginResponse(
            success=False,
            action=AuthAction.STEP_UP,
            message="Additional verification required",
            risk_score=decision.final_score,
            challenge=challenge,
        )

    @staticmethod
    def decide(decision: RiskDecision) -> AuthAction:
        if decision.final_score < GRANT_THRESHOLD:
            return AuthAction.GRANT
        if decision.final_score > DENY_THRESHOLD:
            return AuthAction.DENY
        return AuthAction.STEP_UP

    # -------------------------------------------------------------------------
    # Step-Up
    # -------------------------------------------------------------------------

    def step_up(self, request: StepUpRequest) -> StepUpResponse:
        """Verify a challenge solution and finish the login on success."""
        result = self.challenge_manager.verify(request.challenge_id, request.solution)

        if isinstance(result, Accepted):
            identity = result.owner_identity
            if request.features is not None:
                features = self._to_features(request.features)
                self.profile_store.append(identity, self.engine.summarize(features))

            return StepUpResponse(
                success=True,
                action=AuthAction.GRANT,
                message="Challenge completed successfully",
                session_token=self.tokens.issue(identity, STEP_UP_TOKEN_RISK),
            )

        if isinstance(result, Retry):
            return StepUpResponse(
                success=False,
                action=AuthAction.RETRY,
                message="Incorrect solution",
                attempts_remaining=result.attempts_remaining,
            )

        return StepUpResponse(
            success=False,
            action=AuthAction.DENY,
            message=result.message,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_features(payload: BiometricFeaturesPayload) -> FeatureVector:
        return FeatureVector.from_samples(
            hold_times=payload.hold_times,
            flight_times=payload.flight_times,
            error_rate=payload.error_rate,
            typing_speed=payload.typing_speed,
        )

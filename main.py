"""
Keystroke Gate API

FastAPI application exposing:
- POST /auth/login → GRANT / STEP_UP / DENY
- POST /auth/step-up → GRANT / RETRY / DENY
- GET /auth/challenges/status → active challenge summary
- POST /risk/local → preliminary risk for raw keystroke events
- GET /health

Login and step-up are rate limited per client IP (429 with Retry-After).
Stores are in-memory or Redis-backed depending on RISKGATE_STORE_BACKEND.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import Settings, get_settings
from core.models.challenge import ChallengeManager
from core.models.local_risk import LocalRiskEstimator, RiskModel
from core.orchestrator import (
    AuthOrchestrator,
    InvalidCredentialsError,
    StaticCredentialVerifier,
    StorageUnavailableError,
)
from core.processors.keyboard import KeyboardProcessor
from core.schemas.inputs import LocalRiskRequest, LoginRequest, StepUpRequest
from core.schemas.outputs import (
    AuthAction,
    ChallengeStatus,
    LocalRiskResponse,
    LoginResponse,
    StepUpResponse,
)
from persistence.challenge_store import InMemoryChallengeStore, RedisChallengeStore
from persistence.profile_store import (
    InMemoryProfileStore,
    ProfileStore,
    RedisProfileStore,
    synthetic_profile,
)
from persistence.rate_limiter import (
    LOGIN_SCOPE,
    STEP_UP_SCOPE,
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)


VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Application state container."""
    orchestrator: Optional[AuthOrchestrator] = None
    challenges: Optional[ChallengeManager] = None
    local_model: Optional[RiskModel] = None
    rate_limiter: Optional[RateLimiter] = None
    sweeper: Optional[asyncio.Task] = None


state = AppState()


def build_orchestrator(settings: Settings) -> AuthOrchestrator:
    """Wire stores and collaborators for the configured backend."""
    if settings.store_backend == "redis":
        profiles = RedisProfileStore()
        challenge_store = RedisChallengeStore()
    else:
        profiles = InMemoryProfileStore()
        challenge_store = InMemoryChallengeStore()

    credentials = settings.demo_credentials
    if not credentials:
        logger.warning("No users configured (RISKGATE_DEMO_USERS is empty); every login will fail")

    return AuthOrchestrator(
        profile_store=profiles,
        challenge_manager=ChallengeManager(store=challenge_store),
        credentials=StaticCredentialVerifier(credentials),
    )


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.store_backend == "redis":
        return RedisRateLimiter()
    return InMemoryRateLimiter()


def seed_demo_baselines(profiles: ProfileStore, kinds: Dict[str, str]) -> int:
    """Install synthetic baselines for demo users that have no history yet."""
    seeded = 0
    for identity, kind in kinds.items():
        if kind == "none" or profiles.get(identity) is not None:
            continue
        try:
            profiles.seed(synthetic_profile(identity, kind))
        except ValueError as e:
            logger.warning(f"Skipping demo baseline for {identity}: {e}")
            continue
        seeded += 1
        logger.info(f"Demo baseline seeded: {identity} ({kind})")
    return seeded


def enforce_rate_limit(request: Request, scope: str) -> None:
    client_ip = request.client.host if request.client else "unknown"
    if not state.rate_limiter.check(scope, client_ip):
        retry_after = state.rate_limiter.window_for(scope)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )


async def sweep_challenges(manager: ChallengeManager, interval: float) -> None:
    """Periodically drop expired challenges."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(manager.sweep_expired)
        except Exception as e:
            logger.error(f"Challenge sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    logger.info(f"Starting Keystroke Gate API ({settings.store_backend} backend)...")

    state.orchestrator = build_orchestrator(settings)
    state.challenges = state.orchestrator.challenge_manager
    state.rate_limiter = build_rate_limiter(settings)
    try:
        seed_demo_baselines(state.orchestrator.profile_store, settings.demo_profile_kinds)
    except StorageUnavailableError as e:
        logger.error(f"Demo baselines not seeded: {e}")
    estimator = LocalRiskEstimator(seed=settings.model_seed)
    estimator.start_training()
    state.local_model = estimator
    state.sweeper = asyncio.create_task(
        sweep_challenges(state.challenges, settings.sweep_interval)
    )
    logger.info("Keystroke Gate ready")

    yield

    # Shutdown
    logger.info("Shutting down Keystroke Gate API...")
    state.sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await state.sweeper


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Keystroke Gate",
    description="Risk-adaptive authentication from keystroke dynamics",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "local_model_ready": bool(state.local_model and state.local_model.is_ready()),
    }


# =============================================================================
# Auth Endpoints
# =============================================================================

@app.post("/auth/login", response_model=LoginResponse)
async def login(payload: LoginRequest, request: Request):
    """
    Risk-adaptive login.

    - Rate limit exceeded → 429
    - Invalid credentials → 401 with a DENY body
    - Fused risk < 0.3 → GRANT with a session token
    - 0.3 to 0.7 → STEP_UP with a challenge
    - > 0.7 → DENY
    """
    enforce_rate_limit(request, LOGIN_SCOPE)

    try:
        return state.orchestrator.login(payload)
    except InvalidCredentialsError as e:
        denied = LoginResponse(
            success=False,
            action=AuthAction.DENY,
            message=str(e),
            risk_score=1.0,
        )
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=denied.model_dump(mode="json"),
        )
    except StorageUnavailableError as e:
        logger.error(f"Login storage error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage temporarily unavailable"
        )
    except Exception as e:
        logger.error(f"Login error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal error during login"
        )


@app.post("/auth/step-up", response_model=StepUpResponse)
async def step_up(payload: StepUpRequest, request: Request):
    """
    Answer a step-up challenge.

    Returns GRANT on a correct solution, RETRY while attempts remain,
    DENY when the challenge is unknown, expired, completed or exhausted.
    """
    enforce_rate_limit(request, STEP_UP_SCOPE)

    try:
        return state.orchestrator.step_up(payload)
    except StorageUnavailableError as e:
        logger.error(f"Step-up storage error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage temporarily unavailable"
        )
    except Exception as e:
        logger.error(f"Step-up error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal error during step-up"
        )


@app.get("/auth/challenges/status", response_model=ChallengeStatus)
async def challenge_status():
    """Active challenge count and average attempts."""
    try:
        return state.challenges.status()
    except StorageUnavailableError as e:
        logger.error(f"Challenge status storage error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage temporarily unavailable"
        )


# =============================================================================
# Local Risk Endpoint
# =============================================================================

@app.post("/risk/local", response_model=LocalRiskResponse)
async def local_risk(payload: LocalRiskRequest):
    """
    Extract features from raw key events and score them with the
    local model. Returns the fallback estimate while training runs.
    """
    processor = KeyboardProcessor(session_start=payload.session_start)
    features = processor.extract_features(payload.events)
    estimate = state.local_model.score(features)

    return LocalRiskResponse(
        risk_score=estimate.risk_score,
        confidence=estimate.confidence,
        recommendation=AuthAction(estimate.recommendation.value),
        trained=state.local_model.is_ready(),
        features=features.as_dict(),
    )


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

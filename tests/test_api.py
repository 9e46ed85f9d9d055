"""
API Endpoint Tests

Tests for FastAPI endpoints using TestClient with the in-memory backend.
Demo users and their baselines are injected through RISKGATE_DEMO_USERS
and RISKGATE_DEMO_PROFILES.
"""

import pytest
from fastapi.testclient import TestClient

from core.config import get_settings
from core.models.local_risk import Recommendation, RiskEstimate
from main import app, seed_demo_baselines, state
from persistence.profile_store import InMemoryProfileStore
from persistence.rate_limiter import LOGIN_SCOPE, STEP_UP_SCOPE, InMemoryRateLimiter, RateLimit

from tests.conftest import make_profile, type_keys


DEMO_USERS = "alice:secret123,bob:hunter22,carol:password1"
DEMO_PROFILES = "alice:none,bob:none,carol:consistent"

UNLIMITED = {
    LOGIN_SCOPE: RateLimit(max_requests=1000, window_seconds=900),
    STEP_UP_SCOPE: RateLimit(max_requests=1000, window_seconds=300),
}

MATCHING = {
    "hold_times": [80.0, 82.0, 79.0, 81.0],
    "flight_times": [60.0, 58.0, 61.0],
    "error_rate": 2.0,
    "typing_speed": 55.0,
    "timestamp": 1_700_000_000_000,
}


def login_body(username="alice", password="secret123", risk_score=0.2, features=None):
    return {
        "username": username,
        "password": password,
        "risk_score": risk_score,
        "features": features or MATCHING,
    }


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="module")
def client():
    """TestClient for FastAPI app with lifespan context and demo users."""
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("RISKGATE_STORE_BACKEND", "memory")
        mp.setenv("RISKGATE_DEMO_USERS", DEMO_USERS)
        mp.setenv("RISKGATE_DEMO_PROFILES", DEMO_PROFILES)
        get_settings.cache_clear()

        with TestClient(app, raise_server_exceptions=False) as client:
            state.rate_limiter = InMemoryRateLimiter(limits=UNLIMITED)
            yield client

    get_settings.cache_clear()


# =============================================================================
# Health Check Tests
# =============================================================================

class TestHealthEndpoint:

    def test_health_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data


# =============================================================================
# Demo Baseline Tests
# =============================================================================

class TestDemoBaselines:

    def test_configured_users_are_seeded_at_startup(self, client):
        profiles = state.orchestrator.profile_store

        assert len(profiles.get("carol").samples) >= 5
        assert profiles.get("alice") is None
        assert profiles.get("bob") is None

    def test_existing_history_is_kept(self):
        profiles = InMemoryProfileStore()
        profiles.seed(make_profile("dave", n_samples=3))

        seeded = seed_demo_baselines(profiles, {"dave": "normal", "erin": "robotic"})

        assert seeded == 1
        assert len(profiles.get("dave").samples) == 3
        assert profiles.get("erin") is not None

    def test_unknown_kind_is_skipped(self):
        profiles = InMemoryProfileStore()
        assert seed_demo_baselines(profiles, {"dave": "sloppy", "erin": "none"}) == 0
        assert profiles.get("dave") is None


# =============================================================================
# Login Tests
# =============================================================================

class TestLoginEndpoint:

    def test_invalid_credentials_returns_401(self, client):
        response = client.post("/auth/login", json=login_body(password="not-the-password"))

        assert response.status_code == 401
        data = response.json()
        assert data["action"] == "DENY"
        assert data["success"] is False

    def test_new_user_gets_challenge(self, client):
        response = client.post("/auth/login", json=login_body(username="bob", password="hunter22"))

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "STEP_UP"
        assert data["challenge"]["id"]
        assert data["challenge"]["expires_in"] == 300
        assert "expected_answer" not in data["challenge"]

    def test_mature_baseline_is_granted(self, client):
        state.orchestrator.profile_store.seed(make_profile("carol"))
        response = client.post(
            "/auth/login",
            json=login_body(username="carol", password="password1", risk_score=0.1),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "GRANT"
        assert data["session_token"]

    def test_empty_hold_times_returns_422(self, client):
        features = dict(MATCHING, hold_times=[])
        response = client.post("/auth/login", json=login_body(features=features))
        assert response.status_code == 422

    def test_out_of_range_risk_returns_422(self, client):
        response = client.post("/auth/login", json=login_body(risk_score=1.5))
        assert response.status_code == 422

    def test_storage_failure_returns_503(self, client, monkeypatch):
        class Unavailable:
            def get(self, identity):
                from persistence.connection import StorageUnavailableError
                raise StorageUnavailableError("down")

        monkeypatch.setattr(state.orchestrator, "profile_store", Unavailable())
        response = client.post("/auth/login", json=login_body())
        assert response.status_code == 503


# =============================================================================
# Step-Up Tests
# =============================================================================

class TestStepUpEndpoint:

    def _challenge_id(self, client) -> str:
        # A fresh identity always lands in the step-up band
        state.orchestrator.profile_store.reset("alice")
        response = client.post("/auth/login", json=login_body())
        assert response.json()["action"] == "STEP_UP"
        return response.json()["challenge"]["id"]

    def test_login_then_step_up(self, client):
        challenge_id = self._challenge_id(client)
        answer = state.challenges.store.get(challenge_id).expected_answer

        response = client.post(
            "/auth/step-up",
            json={"challenge_id": challenge_id, "solution": answer, "features": MATCHING},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "GRANT"
        assert data["session_token"]

    def test_wrong_answer_retries(self, client):
        challenge_id = self._challenge_id(client)
        response = client.post(
            "/auth/step-up",
            json={"challenge_id": challenge_id, "solution": "definitely wrong"},
        )

        data = response.json()
        assert data["action"] == "RETRY"
        assert data["attempts_remaining"] == 2

    def test_unknown_challenge_denied(self, client):
        response = client.post("/auth/step-up", json={"challenge_id": "nope", "solution": "1"})

        assert response.status_code == 200
        assert response.json()["action"] == "DENY"

    def test_challenge_status(self, client):
        self._challenge_id(client)
        response = client.get("/auth/challenges/status")

        assert response.status_code == 200
        data = response.json()
        assert data["active_challenges"] >= 1
        assert "math" in data["challenge_types"]


# =============================================================================
# Local Risk Tests
# =============================================================================

class TestLocalRiskEndpoint:

    def test_scores_raw_events(self, client):
        assert state.local_model.wait_until_ready(timeout=60.0)
        events = [e.model_dump(mode="json") for e in type_keys("hello world", hold=100.0, gap=60.0)]

        response = client.post("/risk/local", json={"events": events})
        assert response.status_code == 200

        data = response.json()
        assert data["trained"] is True
        assert 0.0 <= data["risk_score"] <= 1.0
        assert data["recommendation"] in ("GRANT", "STEP_UP", "DENY")
        assert data["features"]["keystroke_count"] == 11

    def test_empty_events_returns_422(self, client):
        response = client.post("/risk/local", json={"events": []})
        assert response.status_code == 422

    def test_substitute_risk_model(self, client, monkeypatch):
        class AlwaysDeny:
            def score(self, features):
                return RiskEstimate(risk_score=0.9, confidence=0.8, recommendation=Recommendation.DENY)

            def is_ready(self):
                return True

        monkeypatch.setattr(state, "local_model", AlwaysDeny())
        events = [e.model_dump(mode="json") for e in type_keys("abc")]

        data = client.post("/risk/local", json={"events": events}).json()
        assert data["recommendation"] == "DENY"
        assert data["risk_score"] == pytest.approx(0.9)


# =============================================================================
# Rate Limiting Tests
# =============================================================================

class TestRateLimiting:

    @pytest.fixture
    def tight_limits(self, monkeypatch):
        limiter = InMemoryRateLimiter(limits={
            LOGIN_SCOPE: RateLimit(max_requests=2, window_seconds=900),
            STEP_UP_SCOPE: RateLimit(max_requests=1, window_seconds=300),
        })
        monkeypatch.setattr(state, "rate_limiter", limiter)
        return limiter

    def test_login_limit(self, client, tight_limits):
        body = login_body(password="not-the-password")
        codes = [client.post("/auth/login", json=body).status_code for _ in range(2)]
        response = client.post("/auth/login", json=body)

        assert codes == [401, 401]
        assert response.status_code == 429
        assert response.headers["retry-after"] == "900"

    def test_step_up_limit(self, client, tight_limits):
        body = {"challenge_id": "nope", "solution": "1"}
        first = client.post("/auth/step-up", json=body)
        second = client.post("/auth/step-up", json=body)

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.headers["retry-after"] == "300"

    def test_local_risk_is_not_limited(self, client, tight_limits):
        events = [e.model_dump(mode="json") for e in type_keys("ab")]
        codes = {client.post("/risk/local", json={"events": events}).status_code for _ in range(5)}
        assert codes == {200}

"""
Keystroke Gate Configuration

Environment-driven settings. A local ``.env`` file is loaded first, so
development setups can keep credentials out of the shell.

Variables:
    RISKGATE_STORE_BACKEND   memory | redis (default: memory)
    REDIS_HOST / REDIS_PORT / REDIS_PASSWORD
    RISKGATE_LOG_LEVEL       (default: INFO)
    RISKGATE_SWEEP_INTERVAL  seconds between expired-challenge sweeps (default: 60)
    RISKGATE_MODEL_SEED      seed for the local model's reference data (default: 42)
    RISKGATE_DEMO_USERS      comma-separated user:password pairs
    RISKGATE_DEMO_PROFILES   comma-separated user:kind pairs for demo baselines
                             (consistent | normal | robotic | none; default: normal)
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration."""
    store_backend: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    log_level: str = "INFO"
    sweep_interval: float = 60.0
    model_seed: int = 42
    demo_users: str = ""
    demo_profiles: str = ""

    @property
    def demo_credentials(self) -> Dict[str, str]:
        """Parse ``demo_users`` into a username → password mapping."""
        credentials: Dict[str, str] = {}
        for pair in self.demo_users.split(","):
            username, sep, password = pair.strip().partition(":")
            if sep and username and password:
                credentials[username] = password
        return credentials

    @property
    def demo_profile_kinds(self) -> Dict[str, str]:
        """Baseline kind per demo user; users without an entry get ``normal``."""
        overrides: Dict[str, str] = {}
        for pair in self.demo_profiles.split(","):
            username, sep, kind = pair.strip().partition(":")
            if sep and username and kind:
                overrides[username] = kind.lower()
        return {user: overrides.get(user, "normal") for user in self.demo_credentials}


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    load_dotenv()

    backend = os.getenv("RISKGATE_STORE_BACKEND", "memory").lower()
    if backend not in ("memory", "redis"):
        raise ValueError(f"Unsupported RISKGATE_STORE_BACKEND: {backend}")

    return Settings(
        store_backend=backend,
        redis_host=os.getenv("REDIS_HOST", "localhost"),
        redis_port=int(os.getenv("REDIS_PORT", 6379)),
        redis_password=os.getenv("REDIS_PASSWORD"),
        log_level=os.getenv("RISKGATE_LOG_LEVEL", "INFO").upper(),
        sweep_interval=float(os.getenv("RISKGATE_SWEEP_INTERVAL", 60.0)),
        model_seed=int(os.getenv("RISKGATE_MODEL_SEED", 42)),
        demo_users=os.getenv("RISKGATE_DEMO_USERS", ""),
        demo_profiles=os.getenv("RISKGATE_DEMO_PROFILES", ""),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings singleton."""
    return load_settings()

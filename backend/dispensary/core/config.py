"""Application configuration.

Environment variables override all defaults.
Lock and retry settings bound how long a dispense may wait on the store.
"""

import os
from pathlib import Path
from typing import List


# Load .env for local development (safe no-op if the file is missing)
from dotenv import load_dotenv

_BACKEND_DIR = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=_BACKEND_DIR / ".env", override=False)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./dispensary.db")

    # Store-level lock waits surface as a retryable conflict, never a hang
    LOCK_TIMEOUT_SECONDS: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
    MAX_CONFLICT_RETRIES: int = int(os.getenv("MAX_CONFLICT_RETRIES", "3"))
    RETRY_BACKOFF_SECONDS: float = float(os.getenv("RETRY_BACKOFF_SECONDS", "0.05"))

    # Dispensing policy
    # "warn": MODERATE interactions are reported and dispensing proceeds
    # "block": MODERATE interactions stop the dispense like SEVERE ones
    MODERATE_INTERACTION_POLICY: str = os.getenv("MODERATE_INTERACTION_POLICY", "warn").lower()
    if MODERATE_INTERACTION_POLICY not in ("warn", "block"):
        raise ValueError(
            f"MODERATE_INTERACTION_POLICY must be 'warn' or 'block', got {MODERATE_INTERACTION_POLICY!r}"
        )
    ALLOW_REFILL_FROM_DISPENSED: bool = _env_bool("ALLOW_REFILL_FROM_DISPENSED", False)

    # CORS (specific origins only, no wildcards)
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3001",
    ]

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DEBUG: bool = ENVIRONMENT == "development"


settings = Settings()

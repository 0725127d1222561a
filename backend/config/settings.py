"""Centralized settings module — single source of truth for all config.

All secrets loaded exclusively from env vars. Never committed, never logged.
Redaction enforced everywhere via observability.redaction.
"""
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # ── Environment ──────────────────────────────────────────────
    ENV: Literal["dev", "staging", "prod"] = Field(default="dev")

    # ── Session Store (Redis) ────────────────────────────────────
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    REDIS_CONNECT_TIMEOUT_S: float = Field(default=5.0)
    # true → unreachable store degrades to no-ops; false → fail hard
    STORE_DEGRADED_MODE: bool = Field(default=True)
    DEVICE_SESSION_TTL_S: int = Field(default=24 * 60 * 60)  # refreshed on heartbeat
    STREAMING_SESSION_TTL_S: int = Field(default=60 * 60)  # absolute, never refreshed

    # ── Cleanup Sweeper ──────────────────────────────────────────
    SWEEP_INTERVAL_S: int = Field(default=5 * 60)
    SESSION_MAX_AGE_S: int = Field(default=10 * 60)

    # ── Connection admission ─────────────────────────────────────
    AUTH_TIMEOUT_S: float = Field(default=30.0)  # first message must be CONNECT
    MIN_CREDENTIAL_LENGTH: int = Field(default=10)
    PRESS_WHILE_STREAMING: Literal["reject", "ignore"] = Field(default="reject")

    # ── Conversation Provider ────────────────────────────────────
    MOCK_PROVIDER: bool = Field(default=True)
    PROVIDER_TIMEOUT_S: float = Field(default=8.0)
    ELEVENLABS_API_KEY: str = Field(default="")
    ELEVENLABS_AGENT_ID: str = Field(default="")
    ELEVENLABS_API_URL: str = Field(default="https://api.elevenlabs.io")
    PROVIDER_BREAKER_THRESHOLD: int = Field(default=5)  # consecutive start failures
    PROVIDER_BREAKER_RECOVERY_S: int = Field(default=30)
    ELEVENLABS_WEBHOOK_SECRET: str = Field(default="")  # empty → post-call signatures not checked

    # ── Observability ────────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    LOG_REDACTION_ENABLED: bool = Field(default=True)

    model_config = {
        "env_file": str(_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

"""Startup configuration validation guardrails."""

import logging


logger = logging.getLogger(__name__)


def _require_coordinated_timeouts(settings) -> None:
    """The sweeper must always finalize a session before the store evicts it."""
    worst_case_s = settings.SESSION_MAX_AGE_S + settings.SWEEP_INTERVAL_S
    if settings.STREAMING_SESSION_TTL_S <= worst_case_s:
        raise RuntimeError(
            "STARTUP FAILED — STREAMING_SESSION_TTL_S "
            f"({settings.STREAMING_SESSION_TTL_S}s) must exceed SESSION_MAX_AGE_S + "
            f"SWEEP_INTERVAL_S ({worst_case_s}s). Otherwise the store can evict a "
            "session the state machine still tracks as live."
        )


def validate_startup_config(settings) -> None:
    """Centralized startup guardrails for required and warning-level config."""
    _require_coordinated_timeouts(settings)

    if settings.PROVIDER_TIMEOUT_S <= 0:
        raise RuntimeError("STARTUP FAILED — PROVIDER_TIMEOUT_S must be positive.")

    if settings.ENV == "prod":
        if settings.MOCK_PROVIDER:
            raise RuntimeError(
                "STARTUP FAILED — MOCK_PROVIDER must be False in production."
            )
        required_vars = {
            "ELEVENLABS_API_KEY": settings.ELEVENLABS_API_KEY,
            "ELEVENLABS_AGENT_ID": settings.ELEVENLABS_AGENT_ID,
        }
        missing = [k for k, v in required_vars.items() if not v]
        if missing:
            raise RuntimeError(
                f"STARTUP FAILED — missing required env vars: {', '.join(missing)}\n"
                "Set them in .env or container environment and restart the server."
            )
    elif not settings.MOCK_PROVIDER:
        warned_vars = {
            "ELEVENLABS_API_KEY": settings.ELEVENLABS_API_KEY,
            "ELEVENLABS_AGENT_ID": settings.ELEVENLABS_AGENT_ID,
        }
        for key, value in warned_vars.items():
            if not value:
                logger.warning("CONFIG WARNING: %s is not set — presses will fail with PROVIDER_ERROR", key)

    if settings.STORE_DEGRADED_MODE:
        logger.info("Store degraded mode ENABLED — an unreachable store will not block startup")

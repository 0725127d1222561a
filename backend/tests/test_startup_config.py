from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from types import SimpleNamespace

import pytest

from config.validators import _require_coordinated_timeouts, validate_startup_config


def _settings(**overrides):
    base = {
        "ENV": "dev",
        "MOCK_PROVIDER": True,
        "PROVIDER_TIMEOUT_S": 8.0,
        "ELEVENLABS_API_KEY": "xi-test-key",
        "ELEVENLABS_AGENT_ID": "agent_test",
        "STORE_DEGRADED_MODE": True,
        "STREAMING_SESSION_TTL_S": 3600,
        "SESSION_MAX_AGE_S": 600,
        "SWEEP_INTERVAL_S": 300,
    }
    base.update(overrides)
    return SimpleNamespace(**base)


def test_session_ttl_must_outlive_sweep_window():
    with pytest.raises(RuntimeError, match="STREAMING_SESSION_TTL_S"):
        _require_coordinated_timeouts(_settings(STREAMING_SESSION_TTL_S=900))


def test_session_ttl_equal_to_sweep_window_fails():
    with pytest.raises(RuntimeError, match="STREAMING_SESSION_TTL_S"):
        _require_coordinated_timeouts(_settings(STREAMING_SESSION_TTL_S=600 + 300))


@pytest.mark.parametrize("timeout_s", [0, -1.0])
def test_provider_timeout_must_be_positive(timeout_s):
    with pytest.raises(RuntimeError, match="PROVIDER_TIMEOUT_S"):
        validate_startup_config(_settings(PROVIDER_TIMEOUT_S=timeout_s))


def test_prod_rejects_mock_provider():
    with pytest.raises(RuntimeError, match="MOCK_PROVIDER"):
        validate_startup_config(_settings(ENV="prod"))


def test_prod_requires_provider_credentials():
    with pytest.raises(RuntimeError, match="ELEVENLABS_AGENT_ID"):
        validate_startup_config(_settings(ENV="prod", MOCK_PROVIDER=False, ELEVENLABS_AGENT_ID=""))


def test_dev_logs_warning_for_missing_provider_vars(caplog):
    caplog.set_level("WARNING")

    validate_startup_config(_settings(MOCK_PROVIDER=False, ELEVENLABS_API_KEY="", ELEVENLABS_AGENT_ID=""))

    assert "ELEVENLABS_API_KEY" in caplog.text
    assert "ELEVENLABS_AGENT_ID" in caplog.text


def test_validate_startup_config_passes_with_valid_prod_config():
    validate_startup_config(_settings(ENV="prod", MOCK_PROVIDER=False))

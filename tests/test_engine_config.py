from __future__ import annotations

from pathlib import Path

import pytest

from askcli.engine.config import EngineConfig
from askcli.engine.errors import ConfigError

_VARS = (
    "ASK_HOME", "ASK_MODEL", "ASK_MAX_ROUNDS", "ASK_TOOL_TIMEOUT", "ASK_LAUNCH_GRACE",
    "ASK_SHUTDOWN_GRACE", "ASK_COMMAND_TIMEOUT", "ASK_TOOL_CACHE", "ASK_LOG_LEVEL",
)


def _clear(monkeypatch) -> None:
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch) -> None:
    _clear(monkeypatch)
    config = EngineConfig.from_env()

    assert config.home_dir == Path.home() / ".ask"
    assert config.model is None
    assert config.max_rounds == 21
    assert config.tool_timeout_seconds == 60.0
    assert config.tool_cache_enabled is False
    assert config.config_path == config.home_dir / "config"
    assert config.sessions_dir == config.home_dir / "sessions"


def test_environment_overrides(monkeypatch, tmp_path) -> None:
    _clear(monkeypatch)
    monkeypatch.setenv("ASK_HOME", str(tmp_path))
    monkeypatch.setenv("ASK_MODEL", "o3")
    monkeypatch.setenv("ASK_MAX_ROUNDS", "5")
    monkeypatch.setenv("ASK_TOOL_TIMEOUT", "2.5")
    monkeypatch.setenv("ASK_TOOL_CACHE", "yes")

    config = EngineConfig.from_env()

    assert config.home_dir == tmp_path
    assert config.model == "o3"
    assert config.max_rounds == 5
    assert config.tool_timeout_seconds == 2.5
    assert config.tool_cache_enabled is True
    assert config.tool_cache_path == tmp_path / "tools_cache.json"


def test_non_positive_round_limit_is_clamped(monkeypatch) -> None:
    _clear(monkeypatch)
    monkeypatch.setenv("ASK_MAX_ROUNDS", "0")
    assert EngineConfig.from_env().max_rounds == 1


@pytest.mark.parametrize("name", ["ASK_MAX_ROUNDS", "ASK_TOOL_TIMEOUT", "ASK_COMMAND_TIMEOUT"])
def test_non_numeric_values_are_config_errors(monkeypatch, name) -> None:
    _clear(monkeypatch)
    monkeypatch.setenv(name, "abc")

    with pytest.raises(ConfigError) as exc_info:
        EngineConfig.from_env()

    assert exc_info.value.path == name
    assert "'abc'" in exc_info.value.reason

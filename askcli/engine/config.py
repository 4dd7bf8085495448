"""Engine configuration loaded from environment variables.

All settings have sensible defaults. Override via ASK_* env vars.
The config *file* (servers, approvals, model defaults) is handled by
askcli.shared.services.config_store.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4.1-mini"

# Optional async callback for engine events (round started, tool
# executed, ...). Signature: async def callback(event: dict) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set; callback errors are logged, not raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_number(name: str, default: Any, cast: Callable[[str], Any]) -> Any:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(name, f"expected a number, got {raw!r}") from None


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Tool-orchestration engine configuration."""

    # State directory: config file, logs, sessions, tool cache.
    home_dir: Path = field(default_factory=lambda: Path.home() / ".ask")

    # Model override from the environment; the config file's
    # defaultModel and the --model flag are resolved by the CLI.
    model: str | None = None

    # Max model round trips per question before giving up.
    max_rounds: int = 21

    # Max wait for any message from a tool server while a request
    # is pending. Slow and dead servers both hit this.
    tool_timeout_seconds: float = 60.0
    # A server that exits within this interval after spawn is
    # reported as a launch failure.
    launch_grace_seconds: float = 0.2
    # Wait between close-stdin, SIGTERM and SIGKILL on shutdown.
    shutdown_grace_seconds: float = 3.0
    # Max wall-clock time for the execute_command built-in.
    command_timeout_seconds: float = 600.0

    # Register cached tool schemas without launching the server.
    tool_cache_enabled: bool = False

    # Logging
    log_level: str = "INFO"

    event_callback: EventCallback | None = field(default=None, repr=False)

    @property
    def config_path(self) -> Path:
        return self.home_dir / "config"

    @property
    def sessions_dir(self) -> Path:
        return self.home_dir / "sessions"

    @property
    def log_dir(self) -> Path:
        return self.home_dir / "logs"

    @property
    def tool_cache_path(self) -> Path:
        return self.home_dir / "tools_cache.json"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from ASK_* environment variables."""
        ask_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("ASK_") and k != "ASK_API_KEY"
        }
        if ask_vars:
            logger.info(
                "EngineConfig.from_env: ASK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(ask_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no ASK_* env vars set, using defaults")

        home = os.getenv("ASK_HOME")
        config = cls(
            home_dir=Path(home).expanduser() if home else Path.home() / ".ask",
            model=os.getenv("ASK_MODEL") or None,
            max_rounds=_env_number("ASK_MAX_ROUNDS", cls.max_rounds, int),
            tool_timeout_seconds=_env_number("ASK_TOOL_TIMEOUT", cls.tool_timeout_seconds, float),
            launch_grace_seconds=_env_number("ASK_LAUNCH_GRACE", cls.launch_grace_seconds, float),
            shutdown_grace_seconds=_env_number("ASK_SHUTDOWN_GRACE", cls.shutdown_grace_seconds, float),
            command_timeout_seconds=_env_number("ASK_COMMAND_TIMEOUT", cls.command_timeout_seconds, float),
            tool_cache_enabled=_env_flag("ASK_TOOL_CACHE"),
            log_level=os.getenv("ASK_LOG_LEVEL", cls.log_level),
        )
        if config.max_rounds < 1:
            logger.warning(
                "ASK_MAX_ROUNDS=%d is not positive; using 1", config.max_rounds,
            )
            config.max_rounds = 1
        logger.debug(
            "EngineConfig.from_env: home=%s max_rounds=%d tool_timeout=%.1fs",
            config.home_dir, config.max_rounds, config.tool_timeout_seconds,
        )
        return config

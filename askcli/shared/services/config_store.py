"""Config file at ~/.ask/config.

Uses the ``.mcp.json`` layout so server blocks can be pasted between
tools::

    {
      "mcpServers": {
        "filesystem": {
          "command": "npx",
          "args": ["-y", "@modelcontextprotocol/server-filesystem", "${HOME}"],
          "env": {"LOG_LEVEL": "${LOG_LEVEL:-info}"}
        }
      },
      "autoApprovedTools": ["filesystem_read_file"],
      "baseUrl": "https://openrouter.ai/api/v1",
      "defaultModel": "gpt-4.1-mini",
      "modelAliases": {"mini": "gpt-4.1-mini"}
    }

The file is JSON unless its name ends in .yaml/.yml. ``${VAR}`` and
``${VAR:-default}`` are expanded in command, args and env values when
descriptors are built, never when saving.
"""
from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from askcli.engine.errors import ConfigError
from askcli.engine.models import ServerDescriptor

from .durable_write import atomic_write_text

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$\{([^:}]+)(?::-([^}]*))?\}")


def expand_env_vars(text: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand ${VAR} and ${VAR:-default}.

    An unset variable without a default is left as written.
    """
    env = os.environ if environ is None else environ

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        value = env.get(name)
        if value is not None:
            return value
        if default is not None:
            return default
        return match.group(0)

    return _VAR_PATTERN.sub(_replace, text)


@dataclass
class ServerDefinition:
    """One entry of mcpServers, as written in the file."""
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"command": self.command}
        if self.args:
            data["args"] = list(self.args)
        if self.env:
            data["env"] = dict(self.env)
        return data


@dataclass
class AskConfig:
    mcp_servers: dict[str, ServerDefinition] = field(default_factory=dict)
    auto_approved_tools: list[str] = field(default_factory=list)
    base_url: str | None = None
    default_model: str | None = None
    model_aliases: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any, path: str = "<config>") -> AskConfig:
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ConfigError(path, "top level must be an object")

        servers: dict[str, ServerDefinition] = {}
        raw_servers = raw.get("mcpServers") or {}
        if not isinstance(raw_servers, dict):
            raise ConfigError(path, "'mcpServers' must be an object")
        for name, entry in raw_servers.items():
            if not isinstance(entry, dict) or not isinstance(entry.get("command"), str):
                raise ConfigError(path, f"server '{name}' needs a string 'command'")
            args = entry.get("args") or []
            env = entry.get("env") or {}
            if not isinstance(args, list) or not isinstance(env, dict):
                raise ConfigError(
                    path, f"server '{name}': 'args' must be a list and 'env' an object",
                )
            servers[str(name)] = ServerDefinition(
                command=entry["command"],
                args=[str(a) for a in args],
                env={str(k): str(v) for k, v in env.items()},
            )

        tools = raw.get("autoApprovedTools") or []
        if not isinstance(tools, list):
            raise ConfigError(path, "'autoApprovedTools' must be a list")
        aliases = raw.get("modelAliases") or {}
        if not isinstance(aliases, dict):
            raise ConfigError(path, "'modelAliases' must be an object")

        return cls(
            mcp_servers=servers,
            auto_approved_tools=[str(t) for t in tools],
            base_url=raw.get("baseUrl") or None,
            default_model=raw.get("defaultModel") or None,
            model_aliases={str(k): str(v) for k, v in aliases.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mcpServers": {name: d.to_dict() for name, d in self.mcp_servers.items()},
            "autoApprovedTools": list(self.auto_approved_tools),
        }
        if self.base_url:
            data["baseUrl"] = self.base_url
        if self.default_model:
            data["defaultModel"] = self.default_model
        if self.model_aliases:
            data["modelAliases"] = dict(self.model_aliases)
        return data

    def resolve_model(self, name: str) -> str:
        """Resolve an alias to its model id; other names pass through."""
        return self.model_aliases.get(name, name)

    def to_server_descriptors(
        self,
        environ: Mapping[str, str] | None = None,
    ) -> list[ServerDescriptor]:
        """Descriptors in configuration order with variables expanded."""
        return [
            ServerDescriptor(
                name=name,
                command=expand_env_vars(d.command, environ),
                args=tuple(expand_env_vars(a, environ) for a in d.args),
                env={k: expand_env_vars(v, environ) for k, v in d.env.items()},
            )
            for name, d in self.mcp_servers.items()
        ]


class ConfigStore:
    """Load and save the config file.

    Every mutation re-reads the file, applies one change and writes it
    back atomically.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_yaml(self) -> bool:
        return self._path.suffix.lower() in (".yaml", ".yml")

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> AskConfig:
        """Parse the file; a missing file yields the defaults."""
        if not self._path.exists():
            logger.info("No config file at %s; using defaults", self._path)
            return AskConfig()
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(str(self._path), exc.strerror or str(exc)) from exc
        if not text.strip():
            return AskConfig()
        try:
            raw = yaml.safe_load(text) if self.is_yaml else json.loads(text)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            logger.error("Parse error in config %s: %s", self._path, exc)
            raise ConfigError(str(self._path), f"parse error: {exc}") from exc
        config = AskConfig.from_dict(raw, str(self._path))
        logger.debug(
            "Loaded config %s: %d server(s), %d auto-approved tool(s)",
            self._path, len(config.mcp_servers), len(config.auto_approved_tools),
        )
        return config

    def save(self, config: AskConfig) -> Path:
        data = config.to_dict()
        if self.is_yaml:
            text = yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
        else:
            text = json.dumps(data, indent=2) + "\n"
        atomic_write_text(self._path, text)
        return self._path

    # ── Mutations ──────────────────────────────────────────────────

    def add_server(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> Path:
        config = self.load()
        if name in config.mcp_servers:
            raise ValueError(
                f"Server '{name}' already exists. Remove it first with: askcli mcp remove {name}"
            )
        config.mcp_servers[name] = ServerDefinition(command, list(args or []), dict(env or {}))
        return self.save(config)

    def remove_server(self, name: str) -> Path:
        config = self.load()
        if name not in config.mcp_servers:
            raise ValueError(f"Server '{name}' not found")
        del config.mcp_servers[name]
        return self.save(config)

    def add_auto_approved_tool(self, tool_name: str) -> Path:
        config = self.load()
        if tool_name not in config.auto_approved_tools:
            config.auto_approved_tools.append(tool_name)
        return self.save(config)

    def set_base_url(self, base_url: str) -> Path:
        config = self.load()
        config.base_url = base_url
        return self.save(config)

    def set_default_model(self, model: str) -> Path:
        config = self.load()
        config.default_model = model
        return self.save(config)

    def set_model_alias(self, alias: str, model: str) -> Path:
        config = self.load()
        config.model_aliases[alias] = model
        return self.save(config)

    def remove_model_alias(self, alias: str) -> Path:
        config = self.load()
        if alias not in config.model_aliases:
            raise ValueError(f"Alias '{alias}' not found")
        del config.model_aliases[alias]
        return self.save(config)

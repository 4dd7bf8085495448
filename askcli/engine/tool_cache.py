"""On-disk cache of discovered tool schemas.

Stored at ~/.ask/tools_cache.json:

    {
        "entries": {
            "<server>": {"config_hash": "<sha256>", "tools": [...]}
        }
    }

An entry is valid only while the server's command, args and env hash
to the same value, so editing a server definition invalidates it.
"""
from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any

from askcli.shared.services.durable_write import atomic_write_json

from .models import ServerDescriptor

logger = logging.getLogger(__name__)


def descriptor_hash(descriptor: ServerDescriptor) -> str:
    """Stable fingerprint of a server's launch definition."""
    payload = json.dumps(
        {
            "command": descriptor.command,
            "args": list(descriptor.args),
            "env": sorted(descriptor.env.items()),
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ToolCache:
    """Load and save cached tool lists per server."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def get(self, descriptor: ServerDescriptor) -> list[dict[str, Any]] | None:
        """Cached tools for the server, or None when missing or stale."""
        entry = self._load().get(descriptor.name)
        if not isinstance(entry, dict):
            return None
        if entry.get("config_hash") != descriptor_hash(descriptor):
            logger.debug("Tool cache for '%s' is stale", descriptor.name)
            return None
        tools = entry.get("tools")
        if not isinstance(tools, list) or not all(
            isinstance(t, dict) and isinstance(t.get("name"), str) for t in tools
        ):
            logger.warning("Tool cache entry for '%s' is malformed; ignoring it", descriptor.name)
            return None
        return tools

    def update(self, descriptor: ServerDescriptor, tools: list[dict[str, Any]]) -> None:
        entries = self._load()
        entries[descriptor.name] = {
            "config_hash": descriptor_hash(descriptor),
            "tools": tools,
        }
        try:
            atomic_write_json(self._path, {"entries": entries})
        except OSError:
            logger.warning("Failed to write tool cache %s", self._path)

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load tool cache %s; ignoring it", self._path)
            return {}
        entries = data.get("entries") if isinstance(data, dict) else None
        return entries if isinstance(entries, dict) else {}

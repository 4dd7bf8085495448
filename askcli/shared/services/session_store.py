"""Saved conversations under ~/.ask/sessions.

Each session is one JSON file, ``<name>.json``, holding the full chat
message list. Unnamed runs are saved as ``last`` so the previous
exchange can be resumed or kept with ``session save NAME``.
``.last-session`` records the name most recently written.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .durable_write import atomic_write_json, atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "last"
LAST_POINTER = ".last-session"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_session_name(name: str) -> str:
    if not _NAME_PATTERN.match(name or ""):
        raise ValueError(
            f"Invalid session name {name!r}: use letters, digits, '.', '_' or '-'"
        )
    return name


def describe_age(modified: float, now: float | None = None) -> str:
    """Human-friendly age of a session file."""
    elapsed = (now if now is not None else time.time()) - modified
    if elapsed < 60:
        return "just now"
    if elapsed < 3600:
        return f"{int(elapsed // 60)} minutes ago"
    if elapsed < 86400:
        return f"{int(elapsed // 3600)} hours ago"
    return datetime.fromtimestamp(modified).strftime("%d %b %y %H:%M")


@dataclass
class SessionInfo:
    name: str
    modified: float


class SessionStore:
    """Load and save named conversations."""

    def __init__(self, sessions_dir: Path) -> None:
        self._dir = sessions_dir

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, name: str) -> Path:
        return self._dir / f"{validate_session_name(name)}.json"

    def save(self, name: str, messages: list[dict[str, Any]]) -> Path:
        path = self.path_for(name)
        atomic_write_json(path, {
            "name": name,
            "updated_at": datetime.now().isoformat(timespec="seconds"),
            "messages": messages,
        })
        atomic_write_text(self._dir / LAST_POINTER, name)
        logger.debug("Saved session %s (%d messages)", name, len(messages))
        return path

    def load(self, name: str) -> list[dict[str, Any]] | None:
        """Messages of a session, or None when it does not exist or is unreadable."""
        path = self.path_for(name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load session %s", path)
            return None
        messages = data.get("messages") if isinstance(data, dict) else data
        if not isinstance(messages, list):
            logger.warning("Session %s has no message list", path)
            return None
        return [m for m in messages if isinstance(m, dict) and "role" in m]

    def copy(self, source: str, target: str) -> Path:
        messages = self.load(source)
        if messages is None:
            raise FileNotFoundError(f"No session named '{source}'")
        return self.save(target, messages)

    def last_session_name(self) -> str:
        try:
            name = (self._dir / LAST_POINTER).read_text(encoding="utf-8").strip()
        except OSError:
            return DEFAULT_SESSION
        return name or DEFAULT_SESSION

    def list(self) -> list[SessionInfo]:
        """Named sessions, newest first. The implicit ``last`` is excluded."""
        if not self._dir.is_dir():
            return []
        sessions: list[SessionInfo] = []
        for path in self._dir.glob("*.json"):
            if path.stem == DEFAULT_SESSION:
                continue
            try:
                sessions.append(SessionInfo(path.stem, path.stat().st_mtime))
            except OSError:
                continue
        sessions.sort(key=lambda s: s.modified, reverse=True)
        return sessions

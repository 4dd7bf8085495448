"""Persistent storage for "always approve" decisions.

Grants live in the config file's ``autoApprovedTools`` list so they can
be reviewed and edited by hand alongside the server definitions.
"""

from __future__ import annotations

import logging

from askcli.shared.services.config_store import ConfigStore

logger = logging.getLogger(__name__)


class PermissionStore:
    """Load and save auto-approved tool names."""

    def __init__(self, config_store: ConfigStore) -> None:
        self._config_store = config_store

    def load(self) -> set[str]:
        """Load all auto-approved tool names."""
        return set(self._config_store.load().auto_approved_tools)

    def add(self, tool_name: str) -> None:
        """Persist one grant. Raises OSError or ConfigError on failure."""
        path = self._config_store.add_auto_approved_tool(tool_name)
        logger.debug("Persisted auto-approval for %s to %s", tool_name, path)

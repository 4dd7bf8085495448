"""Unified tool namespace.

Built-in tools register under bare names at startup; remote tools
register as ``<server>_<tool>`` once their server's tool list is
known. The first registrant of a name wins.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .errors import RegistrationConflict, ToolNotFoundError
from .models import BuiltinBinding, RemoteBinding, ToolDescriptor

if TYPE_CHECKING:
    from .servers import ToolServerManager

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Maps fully-qualified tool names to their executors."""

    def __init__(self, servers: ToolServerManager | None = None) -> None:
        self._servers = servers
        # Insertion order is the catalog order.
        self._tools: dict[str, ToolDescriptor] = {}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(self, descriptor: ToolDescriptor) -> None:
        existing = self._tools.get(descriptor.name)
        if existing is not None:
            raise RegistrationConflict(descriptor.name, existing.owner, descriptor.owner)
        self._tools[descriptor.name] = descriptor
        logger.debug("Registered tool '%s' (%s)", descriptor.name, descriptor.owner)

    def resolve(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def describe_all(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def catalog(self) -> list[dict[str, Any]]:
        """The tool list in the shape the chat completions API expects."""
        return [tool.to_openai_tool() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> str:
        """Run a tool through its binding and return the result text."""
        tool = self.resolve(name)
        binding = tool.binding
        if isinstance(binding, BuiltinBinding):
            return await binding.handler(arguments)
        if isinstance(binding, RemoteBinding):
            if self._servers is None:
                raise ToolNotFoundError(name)
            return await self._servers.call(binding.server_name, binding.tool_name, arguments)
        raise TypeError(f"unknown tool binding: {binding!r}")

"""Tool-server sessions for one run.

ToolServerManager owns at most one live ServerSession per configured
server. All servers are launched concurrently at startup; a server that
fails to launch or handshake is reported as a notice and its tools are
simply absent. A session that dies mid-run (transport failure, timeout)
is relaunched on its next call instead of reusing the broken channel.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import LaunchError, RegistrationConflict, ServerError
from .models import RemoteBinding, ServerDescriptor, ToolDescriptor
from .protocol import ServerSession
from .tool_cache import ToolCache
from .transport import ProcessTransportManager

if TYPE_CHECKING:
    from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServerNotice:
    """Something the operator should see about a server at startup."""
    server_name: str
    message: str


def qualified_name(server_name: str, tool_name: str) -> str:
    return f"{server_name}_{tool_name}"


class ToolServerManager:
    """Launches, tracks, relaunches and stops tool-server sessions."""

    def __init__(
        self,
        descriptors: Sequence[ServerDescriptor],
        transport: ProcessTransportManager,
        *,
        timeout: float = 60.0,
        cache: ToolCache | None = None,
    ) -> None:
        self._descriptors = {d.name: d for d in descriptors}
        self._transport = transport
        self._timeout = timeout
        self._cache = cache
        self._sessions: dict[str, ServerSession] = {}
        self._tools: dict[str, list[dict[str, Any]]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def server_names(self) -> list[str]:
        """Configured server names in configuration order."""
        return list(self._descriptors)

    def session(self, server_name: str) -> ServerSession | None:
        return self._sessions.get(server_name)

    def tools_for(self, server_name: str) -> list[dict[str, Any]]:
        return list(self._tools.get(server_name, []))

    async def start_all(self) -> list[ServerNotice]:
        """Bring up every configured server concurrently.

        Returns one notice per server whose tools are unavailable.
        """
        results = await asyncio.gather(
            *(self._start_one(d) for d in self._descriptors.values())
        )
        return [notice for notice in results if notice is not None]

    async def _start_one(self, descriptor: ServerDescriptor) -> ServerNotice | None:
        if self._cache is not None:
            cached = self._cache.get(descriptor)
            if cached is not None:
                # Launched lazily on first call.
                self._tools[descriptor.name] = cached
                logger.info(
                    "Using %d cached tool(s) for '%s'", len(cached), descriptor.name,
                )
                return None
        try:
            async with self._lock_for(descriptor.name):
                await self._launch(descriptor)
        except ServerError as exc:
            logger.warning("Tool server '%s' unavailable: %s", descriptor.name, exc.reason)
            return ServerNotice(descriptor.name, f"unavailable: {exc.reason}")
        return None

    async def _launch(self, descriptor: ServerDescriptor) -> ServerSession:
        """Launch, initialize and list tools. Caller holds the server lock."""
        session = await ServerSession.open(descriptor, self._transport, timeout=self._timeout)
        try:
            tools = await session.list_tools()
        except BaseException:
            await session.close("tool discovery failed")
            raise
        self._sessions[descriptor.name] = session
        self._tools[descriptor.name] = tools
        if self._cache is not None:
            self._cache.update(descriptor, tools)
        return session

    def register_tools(self, registry: ToolRegistry) -> int:
        """Register discovered tools in configuration order.

        A name already taken by an earlier registration is logged and
        dropped. Returns the number of tools registered.
        """
        count = 0
        for server_name in self._descriptors:
            for tool in self._tools.get(server_name, []):
                descriptor = ToolDescriptor(
                    name=qualified_name(server_name, tool["name"]),
                    description=tool.get("description") or "",
                    input_schema=tool.get("inputSchema") or {"type": "object", "properties": {}},
                    binding=RemoteBinding(server_name, tool["name"]),
                )
                try:
                    registry.register(descriptor)
                except RegistrationConflict as exc:
                    logger.warning("%s; dropping it", exc)
                    continue
                count += 1
        return count

    async def call(self, server_name: str, tool_name: str, arguments: dict[str, Any]) -> str:
        """Invoke a tool, relaunching the server first if its session is dead."""
        session = await self._live_session(server_name)
        return await session.call_tool(tool_name, arguments)

    async def _live_session(self, server_name: str) -> ServerSession:
        descriptor = self._descriptors.get(server_name)
        if descriptor is None:
            raise LaunchError(server_name, "server is not configured")
        async with self._lock_for(server_name):
            session = self._sessions.get(server_name)
            if session is not None and session.is_alive:
                return session
            if session is not None:
                logger.info("Relaunching tool server '%s'", server_name)
                await session.close("relaunching")
                del self._sessions[server_name]
            return await self._launch(descriptor)

    def _lock_for(self, server_name: str) -> asyncio.Lock:
        lock = self._locks.get(server_name)
        if lock is None:
            lock = self._locks[server_name] = asyncio.Lock()
        return lock

    async def shutdown(self) -> None:
        """Close every session, then make sure no process is left running."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(
            *(s.close("shutting down") for s in sessions), return_exceptions=True,
        )
        await self._transport.shutdown_all()

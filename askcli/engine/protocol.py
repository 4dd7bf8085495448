"""MCP client session over a stdio transport.

ServerSession speaks JSON-RPC 2.0 to one tool-server process:
initialize handshake, tools/list discovery, tools/call invocation.

Responses are correlated strictly by request id. A single reader task
owns the receive side of the channel and resolves the future of
whichever pending request a response names, so a server that answers
several outstanding calls out of order still resolves every caller
with its own result.

Tool call flow:
    call_tool() → request() → transport.send → server
    server → transport.receive → _read_loop → _dispatch → future
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from .errors import (
    ProtocolError,
    RequestCancelledError,
    ServerError,
    ServerTimeoutError,
    ToolExecutionError,
    TransportError,
)
from .models import ServerDescriptor
from .transport import ProcessTransportManager, ServerProcess

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = frozenset({
    "2024-11-05",
    "2025-03-26",
    "2025-06-18",
})
CLIENT_INFO = {"name": "askcli", "version": "0.3.0"}

# JSON-RPC "method not found"
METHOD_NOT_FOUND = -32601

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass
class PendingRequest:
    """An outstanding request awaiting its response."""
    request_id: int
    method: str
    future: asyncio.Future


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message") or "unknown error"
        code = error.get("code")
        return f"{message} (code {code})" if code is not None else str(message)
    return str(error)


def format_tool_result(result: dict[str, Any]) -> str:
    """Flatten a tools/call result into the text handed to the model."""
    parts: list[str] = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            continue
        kind = item.get("type")
        if kind == "text":
            parts.append(str(item.get("text", "")))
        elif kind in ("image", "audio"):
            size = len(item.get("data") or "")
            label = "Image" if kind == "image" else "Audio"
            parts.append(f"[{label}: {item.get('mimeType', 'unknown')} ({size} bytes)]")
        elif kind == "resource":
            resource = item.get("resource") or {}
            if isinstance(resource, dict) and "text" in resource:
                parts.append(str(resource["text"]))
            else:
                parts.append(f"[Resource: {resource.get('uri', '?')}]")
        elif kind == "resource_link":
            parts.append(f"[Resource: {item.get('uri', '?')}]")
    if not parts and result.get("structuredContent") is not None:
        parts.append(json.dumps(result["structuredContent"], indent=2))
    return "\n".join(parts)


class ServerSession:
    """Runtime handle for one launched tool server.

    Owns the process handle, the request-id counter, the pending
    request table, and the tool schemas discovered at startup. When the
    session dies (transport failure, timeout, or close()) every pending
    request is resolved with an error; none is left hanging.
    """

    def __init__(
        self,
        handle: ServerProcess,
        transport: ProcessTransportManager,
        *,
        timeout: float = 60.0,
    ) -> None:
        self._handle = handle
        self._transport = transport
        self._timeout = timeout
        self._next_id = 0
        self._pending: dict[int, PendingRequest] = {}
        self._has_pending = asyncio.Event()
        self._reader_task: asyncio.Task | None = None
        self._dead_reason: str | None = None
        self.protocol_version: str | None = None
        self.capabilities: dict[str, Any] = {}
        self.server_info: dict[str, Any] = {}
        self.tools: list[dict[str, Any]] = []

    @classmethod
    async def open(
        cls,
        descriptor: ServerDescriptor,
        transport: ProcessTransportManager,
        *,
        timeout: float = 60.0,
    ) -> ServerSession:
        """Launch the server process and complete the handshake."""
        handle = await transport.start(descriptor)
        session = cls(handle, transport, timeout=timeout)
        try:
            await session.initialize()
        except BaseException:
            await session.close("initialization failed")
            raise
        return session

    @property
    def name(self) -> str:
        return self._handle.name

    @property
    def pid(self) -> int:
        return self._handle.pid

    @property
    def is_alive(self) -> bool:
        return self._dead_reason is None and self._handle.is_alive

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── MCP methods ────────────────────────────────────────────────

    async def initialize(self) -> dict[str, Any]:
        """Run the initialize handshake and return server capabilities."""
        response = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        if "error" in response:
            raise ProtocolError(
                self.name, f"initialize rejected: {_error_text(response['error'])}",
            )
        result = response.get("result")
        if not isinstance(result, dict):
            raise ProtocolError(self.name, "initialize returned no result object")
        version = result.get("protocolVersion")
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise ProtocolError(
                self.name, f"unsupported protocol version: {version!r}",
            )
        self.protocol_version = version
        self.capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo") or {}
        await self.notify("notifications/initialized")
        logger.info(
            "Tool server '%s' initialized (protocol=%s, server=%s)",
            self.name, version, self.server_info.get("name", "?"),
        )
        return self.capabilities

    async def list_tools(self) -> list[dict[str, Any]]:
        """Fetch the server's tool list, following pagination."""
        tools: list[dict[str, Any]] = []
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while True:
            response = await self.request(
                "tools/list", {"cursor": cursor} if cursor else {},
            )
            if "error" in response:
                raise ProtocolError(
                    self.name, f"tools/list failed: {_error_text(response['error'])}",
                )
            result = response.get("result")
            if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
                raise ProtocolError(self.name, "tools/list returned no tool array")
            for entry in result["tools"]:
                if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                    logger.warning(
                        "Tool server '%s' listed a tool without a name; skipping",
                        self.name,
                    )
                    continue
                schema = entry.get("inputSchema")
                tools.append({
                    "name": entry["name"],
                    "description": entry.get("description") or "",
                    "inputSchema": schema if isinstance(schema, dict) else dict(_EMPTY_SCHEMA),
                })
            cursor = result.get("nextCursor")
            if not cursor or cursor in seen_cursors:
                break
            seen_cursors.add(cursor)
        self.tools = tools
        logger.info("Tool server '%s' lists %d tool(s)", self.name, len(tools))
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Invoke a tool and return its flattened text result."""
        response = await self.request(
            "tools/call", {"name": name, "arguments": arguments},
        )
        if "error" in response:
            raise ToolExecutionError(name, _error_text(response["error"]))
        result = response.get("result")
        if not isinstance(result, dict):
            raise ToolExecutionError(name, "server returned a malformed result")
        text = format_tool_result(result)
        if result.get("isError"):
            raise ToolExecutionError(name, text.strip() or "tool reported an error")
        return text

    # ── JSON-RPC plumbing ──────────────────────────────────────────

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and wait for the response with the same id.

        Returns the raw response message; callers interpret result/error.
        """
        if not self.is_alive:
            raise TransportError(self.name, self._dead_reason or "session is closed")
        self._ensure_reader()

        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, method, future)
        self._has_pending.set()

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            try:
                await self._transport.send(self._handle, message)
            except TransportError as exc:
                future.cancel()
                self._fail(exc)
                await self._transport.shutdown(self._handle)
                raise
            try:
                return await asyncio.wait_for(future, timeout=self._timeout)
            except asyncio.TimeoutError:
                exc = ServerTimeoutError(self.name, self._timeout)
                logger.warning(
                    "Request %d (%s) to '%s' timed out after %.1fs",
                    request_id, method, self.name, self._timeout,
                )
                self._fail(exc)
                await self.close(str(exc))
                raise exc from None
        finally:
            self._pending.pop(request_id, None)
            if not self._pending:
                self._has_pending.clear()
            if not future.done():
                future.cancel()

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._transport.send(self._handle, message)

    async def close(self, reason: str = "session closed") -> None:
        """Fail all pending requests, stop the reader, stop the process."""
        self._fail(TransportError(self.name, reason))
        task = self._reader_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._transport.shutdown(self._handle)

    def _ensure_reader(self) -> None:
        if self._reader_task is None or self._reader_task.done():
            self._reader_task = asyncio.create_task(
                self._read_loop(), name=f"reader-{self.name}",
            )

    def _fail(self, exc: ServerError) -> None:
        """Mark the session dead and resolve every pending request."""
        if self._dead_reason is None:
            self._dead_reason = exc.reason
            logger.warning("Tool server '%s' session is dead: %s", self.name, exc.reason)
        pending = list(self._pending.values())
        self._pending.clear()
        self._has_pending.clear()
        for entry in pending:
            if entry.future.done():
                continue
            if isinstance(exc, ServerTimeoutError):
                error: ServerError = ServerTimeoutError(self.name, exc.timeout_seconds)
            else:
                error = RequestCancelledError(self.name, entry.request_id, exc.reason)
            entry.future.set_exception(error)

    async def _read_loop(self) -> None:
        while True:
            await self._has_pending.wait()
            try:
                message = await self._transport.receive(self._handle)
            except ServerTimeoutError as exc:
                if not self._pending:
                    # Idle: the last caller finished while we were waiting.
                    continue
                self._fail(exc)
                break
            except TransportError as exc:
                self._fail(exc)
                break
            await self._dispatch(message)
        await self._transport.shutdown(self._handle)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" in message:
            if "id" in message:
                await self._answer_server_request(message)
            else:
                logger.debug(
                    "Notification from '%s': %s", self.name, message.get("method"),
                )
            return

        raw_id = message.get("id")
        try:
            request_id = int(raw_id)
        except (TypeError, ValueError):
            logger.warning(
                "Discarding response without usable id from '%s': %r",
                self.name, str(message)[:200],
            )
            return
        entry = self._pending.get(request_id)
        if entry is None:
            logger.warning(
                "Discarding response for unknown request id=%s from '%s'",
                raw_id, self.name,
            )
            return
        if not entry.future.done():
            entry.future.set_result(message)

    async def _answer_server_request(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message.get("id")}
        if method == "ping":
            reply["result"] = {}
        else:
            logger.debug("Rejecting server request '%s' from '%s'", method, self.name)
            reply["error"] = {
                "code": METHOD_NOT_FOUND,
                "message": f"Method not supported by client: {method}",
            }
        try:
            await self._transport.send(self._handle, reply)
        except TransportError as exc:
            logger.debug("Could not answer server request on '%s': %s", self.name, exc)

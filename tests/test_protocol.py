from __future__ import annotations

import asyncio
import json
import types

import pytest

from askcli.engine.errors import (
    ProtocolError,
    RequestCancelledError,
    ServerTimeoutError,
    ToolExecutionError,
    TransportError,
)
from askcli.engine.protocol import ServerSession, format_tool_result
from askcli.engine.transport import ProcessTransportManager


class _FakeTransport:
    """In-memory transport; a responder decides what the server sends back."""

    def __init__(self, responder=None) -> None:
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.shutdowns = 0
        self._responder = responder or (lambda message, transport: None)

    async def send(self, handle, message) -> None:
        self.sent.append(message)
        self._responder(message, self)

    async def receive(self, handle, timeout=None) -> dict:
        try:
            item = await asyncio.wait_for(self.inbox.get(), timeout=timeout or 5)
        except asyncio.TimeoutError:
            raise ServerTimeoutError(handle.name, timeout or 5) from None
        if isinstance(item, BaseException):
            raise item
        return item

    async def shutdown(self, handle) -> None:
        self.shutdowns += 1
        handle.is_alive = False

    def deliver(self, message: dict) -> None:
        self.inbox.put_nowait(message)


def _fake_handle():
    return types.SimpleNamespace(name="fake", pid=4242, is_alive=True)


def _text(request_id: int, text: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": {"content": [{"type": "text", "text": text}]}}


# ── Against the fixture server ──


@pytest.mark.asyncio
async def test_open_runs_the_handshake_and_lists_every_page(fixture_server) -> None:
    async with ProcessTransportManager() as transport:
        session = await ServerSession.open(fixture_server(), transport, timeout=5)
        tools = await session.list_tools()
        state = json.loads(await session.call_tool("state", {}))

    assert session.protocol_version == "2025-06-18"
    assert session.server_info["name"] == "fixture"
    assert [t["name"] for t in tools] == ["echo", "add", "fail", "sleep", "state"]
    assert tools[2]["inputSchema"] == {"type": "object", "properties": {}}
    assert state["initialized"] is True


@pytest.mark.asyncio
async def test_call_tool_returns_text_content(fixture_server) -> None:
    async with ProcessTransportManager() as transport:
        session = await ServerSession.open(fixture_server(), transport, timeout=5)
        assert await session.call_tool("echo", {"text": "hello"}) == "hello"
        assert await session.call_tool("add", {"a": 2, "b": 3}) == "5"


@pytest.mark.asyncio
async def test_tool_errors_raise_tool_execution_error(fixture_server) -> None:
    async with ProcessTransportManager() as transport:
        session = await ServerSession.open(fixture_server(), transport, timeout=5)
        with pytest.raises(ToolExecutionError, match="something broke"):
            await session.call_tool("fail", {})
        with pytest.raises(ToolExecutionError, match="Unknown tool: nope"):
            await session.call_tool("nope", {})
        # The session survives tool-level errors.
        assert session.is_alive
        assert await session.call_tool("echo", {"text": "still here"}) == "still here"


@pytest.mark.asyncio
async def test_unsupported_protocol_version_is_rejected(fixture_server) -> None:
    async with ProcessTransportManager() as transport:
        with pytest.raises(ProtocolError, match="unsupported protocol version"):
            await ServerSession.open(fixture_server("bad-protocol"), transport, timeout=5)
        assert transport.live_handles == []


@pytest.mark.asyncio
async def test_concurrent_calls_resolve_by_id_when_answered_out_of_order(fixture_server) -> None:
    finished: list[str] = []

    async def call(session, name, args):
        result = await session.call_tool(name, args)
        finished.append(result)
        return result

    async with ProcessTransportManager() as transport:
        session = await ServerSession.open(fixture_server(), transport, timeout=5)
        slow, fast = await asyncio.gather(
            call(session, "sleep", {"seconds": 0.5, "text": "slow"}),
            call(session, "echo", {"text": "fast"}),
        )

    assert (slow, fast) == ("slow", "fast")
    assert finished == ["fast", "slow"]


@pytest.mark.asyncio
async def test_server_exit_fails_every_pending_call(fixture_server) -> None:
    async with ProcessTransportManager() as transport:
        session = await ServerSession.open(fixture_server("crash-on-call"), transport, timeout=5)
        results = await asyncio.wait_for(
            asyncio.gather(
                session.call_tool("echo", {"text": "a"}),
                session.call_tool("echo", {"text": "b"}),
                return_exceptions=True,
            ),
            timeout=5,
        )

    assert all(isinstance(r, TransportError) for r in results)
    assert any(isinstance(r, RequestCancelledError) for r in results)
    assert not session.is_alive
    assert session.pending_count == 0


@pytest.mark.asyncio
async def test_silent_server_times_out_and_session_dies(fixture_server) -> None:
    async with ProcessTransportManager() as transport:
        session = await ServerSession.open(fixture_server("hang"), transport, timeout=5)
        session._timeout = 0.3
        with pytest.raises(ServerTimeoutError):
            await session.call_tool("echo", {"text": "hello?"})
        assert not session.is_alive
        with pytest.raises(TransportError):
            await session.call_tool("echo", {"text": "again"})


@pytest.mark.asyncio
async def test_server_ping_is_answered(fixture_server) -> None:
    async with ProcessTransportManager() as transport:
        session = await ServerSession.open(fixture_server("noisy"), transport, timeout=5)
        await session.list_tools()
        state = json.loads(await session.call_tool("state", {}))
    assert state["pong"] is True


# ── Against an in-memory transport ──


@pytest.mark.asyncio
async def test_responses_delivered_in_reverse_order_reach_their_callers() -> None:
    transport = _FakeTransport()
    session = ServerSession(_fake_handle(), transport, timeout=5)

    first = asyncio.create_task(session.call_tool("echo", {"text": "one"}))
    second = asyncio.create_task(session.call_tool("echo", {"text": "two"}))
    while len(transport.sent) < 2:
        await asyncio.sleep(0)

    ids = [m["id"] for m in transport.sent]
    transport.deliver(_text(ids[1], "two"))
    transport.deliver(_text(ids[0], "one"))

    assert await first == "one"
    assert await second == "two"
    assert session.pending_count == 0
    await session.close()


@pytest.mark.asyncio
async def test_stale_and_unknown_response_ids_are_discarded() -> None:
    def responder(message, transport):
        if "id" in message:
            transport.deliver(_text(999, "stale"))
            transport.deliver({"jsonrpc": "2.0", "result": {}})
            transport.deliver(_text(message["id"], "fresh"))

    session = ServerSession(_fake_handle(), _FakeTransport(responder), timeout=5)
    assert await session.call_tool("echo", {}) == "fresh"
    await session.close()


@pytest.mark.asyncio
async def test_unknown_server_request_gets_method_not_found() -> None:
    def responder(message, transport):
        if message.get("method") == "tools/call":
            transport.deliver({"jsonrpc": "2.0", "id": "s1", "method": "sampling/createMessage"})
            transport.deliver(_text(message["id"], "done"))

    transport = _FakeTransport(responder)
    session = ServerSession(_fake_handle(), transport, timeout=5)
    assert await session.call_tool("echo", {}) == "done"

    replies = [m for m in transport.sent if m.get("id") == "s1"]
    assert replies and replies[0]["error"]["code"] == -32601
    await session.close()


@pytest.mark.asyncio
async def test_close_resolves_pending_requests() -> None:
    transport = _FakeTransport()
    session = ServerSession(_fake_handle(), transport, timeout=5)
    pending = asyncio.create_task(session.call_tool("echo", {}))
    while not transport.sent:
        await asyncio.sleep(0)

    await session.close("shutting down")

    with pytest.raises(RequestCancelledError, match="shutting down"):
        await pending
    assert transport.shutdowns >= 1


def test_format_tool_result_flattens_mixed_content() -> None:
    text = format_tool_result({
        "content": [
            {"type": "text", "text": "line one"},
            {"type": "image", "mimeType": "image/png", "data": "aGVsbG8="},
            {"type": "resource", "resource": {"uri": "file:///tmp/x"}},
            {"type": "resource", "resource": {"uri": "file:///tmp/y", "text": "inline"}},
        ],
    })
    assert text.splitlines() == [
        "line one",
        "[Image: image/png (8 bytes)]",
        "[Resource: file:///tmp/x]",
        "inline",
    ]


def test_format_tool_result_falls_back_to_structured_content() -> None:
    assert json.loads(format_tool_result({"content": [], "structuredContent": {"ok": True}})) == {"ok": True}

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

from askcli.engine.models import ModelResponse, ServerDescriptor, ToolCallRequest
from askcli.engine.providers.base import Provider

FIXTURES = Path(__file__).parent / "fixtures"
JSON_RPC_SERVER = FIXTURES / "json_rpc_server.py"
STATUS_SERVER = FIXTURES / "status_server.py"


class ScriptedProvider(Provider):
    """Replays a fixed list of model replies and records every request."""

    def __init__(self, replies: list[ModelResponse] | None = None, *, repeat_last: bool = False) -> None:
        self._replies = list(replies or [])
        self._repeat_last = repeat_last
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "scripted"

    async def complete(self, messages, tools, *, model):
        self.requests.append({"messages": messages, "tools": tools, "model": model})
        if len(self._replies) == 1 and self._repeat_last:
            return self._replies[0]
        if not self._replies:
            raise AssertionError("scripted provider ran out of replies")
        return self._replies.pop(0)

    async def shutdown(self) -> None:
        self.closed = True


def tool_call(name: str, arguments: str = "{}", call_id: str | None = None) -> ToolCallRequest:
    return ToolCallRequest(id=call_id or f"call_{name}", name=name, arguments=arguments)


def calls_reply(*calls: ToolCallRequest) -> ModelResponse:
    return ModelResponse(text=None, tool_calls=list(calls), finish_reason="tool_calls")


def answer_reply(text: str) -> ModelResponse:
    return ModelResponse(text=text, finish_reason="stop")


@pytest.fixture
def fixture_server():
    """Factory for descriptors of the scriptable JSON-RPC fixture server."""

    def _make(mode: str = "normal", name: str = "fx") -> ServerDescriptor:
        return ServerDescriptor(
            name=name,
            command=sys.executable,
            args=(str(JSON_RPC_SERVER), mode),
        )

    return _make


@pytest.fixture
def status_server():
    def _make(name: str = "ops") -> ServerDescriptor:
        return ServerDescriptor(name=name, command=sys.executable, args=(str(STATUS_SERVER),))

    return _make

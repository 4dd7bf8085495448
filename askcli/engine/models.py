"""Core data models for the tool-orchestration engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator, Union


class ApprovalDecision(str, Enum):
    """Operator answers to a permission prompt."""
    APPROVE_ONCE = "approve_once"
    APPROVE_ALWAYS = "approve_always"
    DENY = "deny"


class GateState(str, Enum):
    """Permission gate states for a single invocation."""
    REQUESTED = "requested"
    AUTO_APPROVED = "auto_approved"
    AWAITING_OPERATOR = "awaiting_operator"
    APPROVED = "approved"
    DENIED = "denied"


class LoopState(str, Enum):
    """Agent loop states. Transitions are driven by AgentLoop.run()."""
    SENDING = "sending"
    AWAITING_MODEL = "awaiting_model"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    GATING = "gating"
    EXECUTING = "executing"
    FINAL_ANSWER = "final_answer"


@dataclass(frozen=True)
class ServerDescriptor:
    """A configured tool server with variables already expanded."""
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)


# Built-in tool handler: receives the decoded argument document.
ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


@dataclass(frozen=True)
class BuiltinBinding:
    """Executes in-process through a handler coroutine."""
    handler: ToolHandler


@dataclass(frozen=True)
class RemoteBinding:
    """Executes on a tool server under the server's own tool name."""
    server_name: str
    tool_name: str


ToolBinding = Union[BuiltinBinding, RemoteBinding]


@dataclass
class ToolDescriptor:
    """One entry of the tool catalog."""
    name: str
    description: str
    input_schema: dict[str, Any]
    binding: ToolBinding

    @property
    def owner(self) -> str:
        """Human-readable origin, used in logs and conflict reports."""
        if isinstance(self.binding, RemoteBinding):
            return f"server '{self.binding.server_name}'"
        return "built-in"

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call requested by the model."""
    id: str
    name: str
    arguments: str = "{}"

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ModelResponse:
    """One assistant turn as returned by a provider."""
    text: str | None = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    finish_reason: str | None = None


class Conversation:
    """Append-only, ordered list of role-tagged chat messages."""

    def __init__(self, messages: list[dict[str, Any]] | None = None) -> None:
        self._messages: list[dict[str, Any]] = [
            dict(m) for m in (messages or [])
        ]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self._messages)

    @property
    def messages(self) -> list[dict[str, Any]]:
        """A copy of the messages, safe to hand to other components."""
        return [dict(m) for m in self._messages]

    def append(self, message: dict[str, Any]) -> None:
        if "role" not in message:
            raise ValueError("message must carry a role")
        self._messages.append(dict(message))

    def add_system(self, content: str) -> None:
        self.append({"role": "system", "content": content})

    def add_user(self, content: str) -> None:
        self.append({"role": "user", "content": content})

    def add_assistant(
        self,
        content: str | None,
        tool_calls: list[ToolCallRequest] | None = None,
    ) -> None:
        message: dict[str, Any] = {"role": "assistant", "content": content}
        if tool_calls:
            message["tool_calls"] = [call.to_message() for call in tool_calls]
        self.append(message)

    def add_tool_result(self, tool_call_id: str, content: str) -> None:
        self.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "content": content,
        })


def parse_arguments(raw: str | None) -> dict[str, Any]:
    """Decode a model-supplied argument document.

    Raises ValueError when the text is not a JSON object.
    """
    if raw is None or not raw.strip():
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value

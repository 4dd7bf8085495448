from __future__ import annotations

import asyncio

import pytest
from conftest import ScriptedProvider, answer_reply, calls_reply, tool_call

from askcli.engine.agent_loop import SKIPPED_RESULT, AgentLoop
from askcli.engine.builtin_tools import builtin_tools
from askcli.engine.errors import (
    AgentCancelledError,
    ResourceExhaustedError,
    ResponseTruncatedError,
    ToolExecutionError,
)
from askcli.engine.models import ApprovalDecision, BuiltinBinding, ModelResponse, ToolDescriptor
from askcli.engine.permissions import ApprovalState, PermissionGate
from askcli.engine.tool_registry import ToolRegistry


class _Recorder:
    """Built-in handler that records calls and checks they never overlap."""

    def __init__(self, name: str, log: list[str], running: list[int]) -> None:
        self.name = name
        self._log = log
        self._running = running

    async def __call__(self, arguments):
        self._running[0] += 1
        assert self._running[0] == 1, "tool calls overlapped"
        await asyncio.sleep(0.01)
        self._log.append(f"{self.name}:{arguments.get('n', '')}")
        self._running[0] -= 1
        return f"{self.name} done {arguments.get('n', '')}".strip()


def _registry(*names: str, log=None) -> ToolRegistry:
    log = log if log is not None else []
    running = [0]
    registry = ToolRegistry()
    for name in names:
        registry.register(ToolDescriptor(
            name=name,
            description=name,
            input_schema={"type": "object", "properties": {}},
            binding=BuiltinBinding(_Recorder(name, log, running)),
        ))
    return registry


def _gate(*approved: str, answer=ApprovalDecision.DENY, asked=None) -> PermissionGate:
    async def operator(tool_name, arguments):
        if asked is not None:
            asked.append(tool_name)
        return answer

    return PermissionGate(ApprovalState.from_names(approved), operator)


def _tool_results(conversation):
    return [m for m in conversation if m["role"] == "tool"]


@pytest.mark.asyncio
async def test_plain_answer_ends_the_loop() -> None:
    provider = ScriptedProvider([answer_reply("42")])
    loop = AgentLoop(provider, _registry(), _gate(), model="m", system_prompt="sys")

    result = await loop.run("what is the answer?")

    assert result.answer == "42"
    assert result.rounds == 1
    assert [m["role"] for m in result.conversation] == ["system", "user", "assistant"]
    assert provider.requests[0]["model"] == "m"


@pytest.mark.asyncio
async def test_every_call_in_a_batch_gets_one_result_in_order() -> None:
    log: list[str] = []
    calls = [tool_call("alpha", '{"n": 1}', "c1"), tool_call("beta", '{"n": 2}', "c2"),
             tool_call("alpha", '{"n": 3}', "c3")]
    provider = ScriptedProvider([calls_reply(*calls), answer_reply("done")])
    loop = AgentLoop(provider, _registry("alpha", "beta", log=log), _gate("alpha", "beta"),
                     model="m", system_prompt="sys")

    result = await loop.run("go")

    results = _tool_results(result.conversation)
    assert [r["tool_call_id"] for r in results] == ["c1", "c2", "c3"]
    assert [r["content"] for r in results] == ["alpha done 1", "beta done 2", "alpha done 3"]
    assert log == ["alpha:1", "beta:2", "alpha:3"]
    assert result.tool_calls == 3

    # The second round carries the whole conversation and the catalog.
    second = provider.requests[1]
    assert [m["role"] for m in second["messages"]] == ["system", "user", "assistant", "tool", "tool", "tool"]
    assert second["messages"][2]["tool_calls"][0]["id"] == "c1"
    assert [t["function"]["name"] for t in second["tools"]] == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_become_results_without_prompting() -> None:
    asked: list[str] = []
    provider = ScriptedProvider([
        calls_reply(tool_call("ghost", "{}", "c1"), tool_call("alpha", "{not json", "c2"),
                    tool_call("alpha", "[1, 2]", "c3")),
        answer_reply("ok"),
    ])
    loop = AgentLoop(provider, _registry("alpha"), _gate(asked=asked), model="m", system_prompt="sys")

    result = await loop.run("go")

    contents = [r["content"] for r in _tool_results(result.conversation)]
    assert contents[0] == "Unknown tool: ghost"
    assert contents[1].startswith("Error: Failed to parse arguments for 'alpha'")
    assert contents[2].startswith("Error: Failed to parse arguments for 'alpha'")
    assert asked == []


@pytest.mark.asyncio
async def test_denied_call_gets_the_cancellation_result() -> None:
    log: list[str] = []
    provider = ScriptedProvider([calls_reply(tool_call("alpha", "{}", "c1")), answer_reply("ok")])
    loop = AgentLoop(provider, _registry("alpha", log=log), _gate(answer=ApprovalDecision.DENY),
                     model="m", system_prompt="sys")

    result = await loop.run("go")

    assert _tool_results(result.conversation)[0]["content"] == "Tool 'alpha' execution canceled by user."
    assert log == []


@pytest.mark.asyncio
async def test_tool_failure_is_reported_to_the_model() -> None:
    async def broken(arguments):
        raise ToolExecutionError("broken", "disk on fire")

    registry = ToolRegistry()
    registry.register(ToolDescriptor("broken", "", {}, BuiltinBinding(broken)))
    provider = ScriptedProvider([calls_reply(tool_call("broken", "{}", "c1")), answer_reply("sorry")])
    loop = AgentLoop(provider, registry, _gate("broken"), model="m", system_prompt="sys")

    result = await loop.run("go")

    assert _tool_results(result.conversation)[0]["content"] == "Error: disk on fire"
    assert result.answer == "sorry"


@pytest.mark.asyncio
async def test_bad_builtin_arguments_do_not_end_the_run() -> None:
    registry = ToolRegistry()
    for descriptor in builtin_tools(command_timeout=5):
        registry.register(descriptor)
    provider = ScriptedProvider([
        calls_reply(
            tool_call("execute_command", '{"command": "echo hi", "working_directory": 5}', "c1"),
            tool_call("read_file", '{"path": "a\\u0000b"}', "c2"),
            tool_call("list_directory", '{"path": "a\\u0000b"}', "c3"),
        ),
        answer_reply("done"),
    ])
    loop = AgentLoop(
        provider, registry, _gate("execute_command", "read_file", "list_directory"),
        model="m", system_prompt="sys",
    )

    result = await loop.run("q")

    assert result.answer == "done"
    contents = [r["content"] for r in _tool_results(result.conversation)]
    assert len(contents) == 3
    assert all(c.startswith("Error: ") for c in contents)


@pytest.mark.asyncio
async def test_round_limit_raises_after_exactly_max_rounds() -> None:
    provider = ScriptedProvider([calls_reply(tool_call("alpha"))], repeat_last=True)
    loop = AgentLoop(provider, _registry("alpha"), _gate("alpha"), model="m",
                     max_rounds=4, system_prompt="sys")

    with pytest.raises(ResourceExhaustedError, match="No response after 4 rounds"):
        await loop.run("loop forever")

    assert len(provider.requests) == 4
    assert len(_tool_results(loop.conversation)) == 4


@pytest.mark.asyncio
async def test_length_finish_reason_raises() -> None:
    provider = ScriptedProvider([ModelResponse(text="partial", finish_reason="length")])
    loop = AgentLoop(provider, _registry(), _gate(), model="m", system_prompt="sys")

    with pytest.raises(ResponseTruncatedError, match="Response too long"):
        await loop.run("write a novel")


@pytest.mark.asyncio
async def test_cancel_skips_the_rest_of_the_batch() -> None:
    registry = ToolRegistry()
    loop: AgentLoop | None = None

    async def cancelling(arguments):
        loop.cancel()
        return "ran"

    registry.register(ToolDescriptor("first", "", {}, BuiltinBinding(cancelling)))
    registry.register(ToolDescriptor("second", "", {}, BuiltinBinding(cancelling)))
    provider = ScriptedProvider([
        calls_reply(tool_call("first", "{}", "c1"), tool_call("second", "{}", "c2"),
                    tool_call("second", "{}", "c3")),
    ])
    loop = AgentLoop(provider, registry, _gate("first", "second"), model="m", system_prompt="sys")

    with pytest.raises(AgentCancelledError):
        await loop.run("go")

    results = _tool_results(loop.conversation)
    assert [r["tool_call_id"] for r in results] == ["c1", "c2", "c3"]
    assert [r["content"] for r in results] == ["ran", SKIPPED_RESULT, SKIPPED_RESULT]
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_history_is_continued_without_a_new_system_prompt() -> None:
    history = [
        {"role": "system", "content": "old system"},
        {"role": "user", "content": "earlier"},
        {"role": "assistant", "content": "earlier answer"},
    ]
    provider = ScriptedProvider([answer_reply("again")])
    loop = AgentLoop(provider, _registry(), _gate(), model="m", system_prompt="new system")

    result = await loop.run("follow-up", history)

    messages = result.conversation.messages
    assert [m["content"] for m in messages if m["role"] == "system"] == ["old system"]
    assert messages[3] == {"role": "user", "content": "follow-up"}
    assert history[-1]["content"] == "earlier answer"
    assert len(history) == 3


def test_max_rounds_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AgentLoop(ScriptedProvider(), ToolRegistry(), _gate(), model="m", max_rounds=0)

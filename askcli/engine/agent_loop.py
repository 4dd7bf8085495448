"""Agent loop: one question, many model round trips.

Each round sends the whole accumulated conversation plus the current
tool catalog. A reply with tool calls is answered by running the calls
strictly in the order received, appending exactly one tool-result per
call (tagged with the call id), and going around again. A reply
without tool calls is the final answer.

    SENDING → AWAITING_MODEL → FINAL_ANSWER
                             ↘ TOOL_CALLS_PENDING → (GATING → EXECUTING)* → SENDING

Errors scoped to a tool or a server become tool results; the model
sees them and can react. Only model API errors, the round limit and
cancellation end the loop early.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .config import EventCallback, fire_event
from .errors import (
    AgentCancelledError,
    ResourceExhaustedError,
    ResponseTruncatedError,
    ServerError,
    ToolExecutionError,
    ToolNotFoundError,
)
from .models import Conversation, LoopState, ToolCallRequest, parse_arguments
from .permissions import PermissionGate
from .prompt import build_system_prompt, detect_shell_kind
from .providers.base import Provider
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

SKIPPED_RESULT = "Tool call skipped: the run was cancelled before it executed."


@dataclass
class AgentResult:
    """Outcome of one AgentLoop.run()."""
    answer: str
    conversation: Conversation
    rounds: int
    tool_calls: int


class AgentLoop:
    """Drives one question/answer exchange with the model."""

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        gate: PermissionGate,
        *,
        model: str,
        max_rounds: int = 21,
        system_prompt: str | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self._provider = provider
        self._registry = registry
        self._gate = gate
        self._model = model
        self._max_rounds = max_rounds
        self._system_prompt = system_prompt
        self._event_callback = event_callback
        self._cancelled = False
        self._state = LoopState.SENDING
        self._conversation = Conversation()

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def conversation(self) -> Conversation:
        """The conversation of the current or most recent run."""
        return self._conversation

    def cancel(self) -> None:
        """Stop after the in-flight step; remaining calls are skipped."""
        logger.info("Agent loop cancellation requested")
        self._cancelled = True

    async def run(
        self,
        user_message: str,
        history: list[dict[str, Any]] | None = None,
    ) -> AgentResult:
        self._cancelled = False
        conversation = Conversation(history)
        self._conversation = conversation
        if not len(conversation):
            conversation.add_system(
                self._system_prompt or build_system_prompt(detect_shell_kind())
            )
        conversation.add_user(user_message)

        tool_calls = 0
        for round_number in range(1, self._max_rounds + 1):
            self._raise_if_cancelled()
            self._state = LoopState.SENDING
            catalog = self._registry.catalog()
            await fire_event(self._event_callback, {
                "event": "round_started", "round": round_number, "tools": len(catalog),
            })
            logger.debug(
                "Round %d/%d: %d message(s), %d tool(s)",
                round_number, self._max_rounds, len(conversation), len(catalog),
            )

            self._state = LoopState.AWAITING_MODEL
            response = await self._provider.complete(
                conversation.messages, catalog, model=self._model,
            )
            if response.finish_reason == "length":
                raise ResponseTruncatedError()

            if not response.tool_calls:
                answer = response.text or ""
                conversation.add_assistant(answer)
                self._state = LoopState.FINAL_ANSWER
                logger.info(
                    "Final answer after %d round(s), %d tool call(s)",
                    round_number, tool_calls,
                )
                return AgentResult(answer, conversation, round_number, tool_calls)

            self._state = LoopState.TOOL_CALLS_PENDING
            conversation.add_assistant(response.text, response.tool_calls)
            await self._run_batch(conversation, response.tool_calls)
            tool_calls += len(response.tool_calls)

        logger.warning("No final answer after %d round(s)", self._max_rounds)
        raise ResourceExhaustedError(self._max_rounds)

    async def _run_batch(
        self,
        conversation: Conversation,
        calls: list[ToolCallRequest],
    ) -> None:
        """Run calls in order; every call gets exactly one tool result."""
        for index, call in enumerate(calls):
            if self._cancelled:
                self._skip_remaining(conversation, calls[index:])
                raise AgentCancelledError("Cancelled by operator")
            try:
                result = await self._execute(call)
            except asyncio.CancelledError:
                self._skip_remaining(conversation, calls[index:])
                raise
            conversation.add_tool_result(call.id, result)

    @staticmethod
    def _skip_remaining(conversation: Conversation, calls: list[ToolCallRequest]) -> None:
        for call in calls:
            conversation.add_tool_result(call.id, SKIPPED_RESULT)

    async def _execute(self, call: ToolCallRequest) -> str:
        """Gate and run one call; tool-scoped failures become result text."""
        try:
            self._registry.resolve(call.name)
        except ToolNotFoundError as exc:
            logger.warning("Model requested unknown tool '%s'", call.name)
            return str(exc)
        try:
            arguments = parse_arguments(call.arguments)
        except ValueError as exc:
            return f"Error: Failed to parse arguments for '{call.name}': {exc}"

        self._state = LoopState.GATING
        outcome = await self._gate.check(call.name, arguments)
        if not outcome.allowed:
            return outcome.denial_text

        self._state = LoopState.EXECUTING
        await fire_event(self._event_callback, {
            "event": "tool_call_started", "tool_name": call.name, "call_id": call.id,
        })
        try:
            result = await self._registry.execute(call.name, arguments)
            success = True
        except ToolExecutionError as exc:
            logger.info("Tool '%s' failed: %s", call.name, exc.detail)
            result, success = f"Error: {exc.detail}", False
        except (ServerError, ToolNotFoundError) as exc:
            logger.warning("Tool '%s' unavailable: %s", call.name, exc)
            result, success = f"Error: {exc}", False
        await fire_event(self._event_callback, {
            "event": "tool_call_finished",
            "tool_name": call.name,
            "call_id": call.id,
            "success": success,
            "result": result,
        })
        return result

    def _raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AgentCancelledError("Cancelled by operator")

"""Permission gate for tool invocations.

Every tool call, built-in or remote, passes through PermissionGate.check()
before it executes. A tool auto-executes iff its fully-qualified name is
in the durable approval set (persisted across runs) or the session set
(this process only). Otherwise the operator is asked and answers
approve-once, approve-always or deny.

approve-always is persisted before check() returns, so a crash right
after the tool runs cannot lose the grant.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import EventCallback, fire_event
from .errors import AskError
from .models import ApprovalDecision, GateState

logger = logging.getLogger(__name__)

# Asks the operator about one call: (tool_name, arguments) -> decision.
PermissionCallback = Callable[[str, dict[str, Any]], Awaitable[ApprovalDecision]]


def denial_message(tool_name: str) -> str:
    return f"Tool '{tool_name}' execution canceled by user."


class ApprovalStore(Protocol):
    """Durable storage for always-approved tool names."""

    def load(self) -> set[str]: ...

    def add(self, tool_name: str) -> None: ...


@dataclass
class ApprovalState:
    """Durable and session-scoped approval sets."""
    durable: set[str] = field(default_factory=set)
    session: set[str] = field(default_factory=set)

    @classmethod
    def from_names(cls, durable: Iterable[str]) -> ApprovalState:
        return cls(durable=set(durable))

    def is_approved(self, tool_name: str) -> bool:
        return tool_name in self.durable or tool_name in self.session


@dataclass
class GateOutcome:
    """Result of gating one invocation."""
    tool_name: str
    state: GateState
    decision: ApprovalDecision | None = None

    @property
    def allowed(self) -> bool:
        return self.state in (GateState.AUTO_APPROVED, GateState.APPROVED)

    @property
    def denial_text(self) -> str:
        return denial_message(self.tool_name)


class PermissionGate:
    """Decides whether a tool call may run."""

    def __init__(
        self,
        state: ApprovalState,
        ask_operator: PermissionCallback,
        *,
        store: ApprovalStore | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._state = state
        self._ask_operator = ask_operator
        self._store = store
        self._event_callback = event_callback
        self._gate_state: GateState | None = None

    @property
    def state(self) -> ApprovalState:
        return self._state

    @property
    def gate_state(self) -> GateState | None:
        """State of the invocation being gated, or of the last one."""
        return self._gate_state

    async def check(self, tool_name: str, arguments: dict[str, Any]) -> GateOutcome:
        self._gate_state = GateState.REQUESTED
        if self._state.is_approved(tool_name):
            logger.debug("Tool '%s' auto-approved", tool_name)
            await fire_event(self._event_callback, {
                "event": "tool_auto_approved", "tool_name": tool_name, "arguments": arguments,
            })
            return self._finish(GateOutcome(tool_name, GateState.AUTO_APPROVED))

        self._gate_state = GateState.AWAITING_OPERATOR
        logger.info("Awaiting operator decision for tool '%s'", tool_name)
        await fire_event(self._event_callback, {
            "event": "permission_requested", "tool_name": tool_name, "arguments": arguments,
        })
        try:
            decision = await self._ask_operator(tool_name, arguments)
        except (EOFError, OSError) as exc:
            logger.warning("Operator prompt for '%s' failed (%s); denying", tool_name, exc)
            decision = ApprovalDecision.DENY
        logger.info("Operator decision for tool '%s': %s", tool_name, decision.value)

        if decision is ApprovalDecision.DENY:
            return self._finish(GateOutcome(tool_name, GateState.DENIED, decision))
        if decision is ApprovalDecision.APPROVE_ALWAYS:
            self._state.session.add(tool_name)
            self._persist(tool_name)
        return self._finish(GateOutcome(tool_name, GateState.APPROVED, decision))

    def _finish(self, outcome: GateOutcome) -> GateOutcome:
        self._gate_state = outcome.state
        return outcome

    def _persist(self, tool_name: str) -> None:
        if tool_name in self._state.durable:
            return
        if self._store is None:
            logger.debug("No approval store; '%s' approved for this session only", tool_name)
            return
        try:
            self._store.add(tool_name)
        except (OSError, AskError):
            logger.warning(
                "Failed to persist approval for '%s'; approved for this session only",
                tool_name, exc_info=True,
            )
            return
        self._state.durable.add(tool_name)
        logger.info("Tool '%s' added to auto-approved tools", tool_name)

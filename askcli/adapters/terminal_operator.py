"""Terminal side of the run: approval prompts, notices and the answer.

Prompts and notices go to stderr so stdout carries only the final
answer and can be piped. Operator input is read on a worker thread so
the event loop (and any tool-server reader tasks) keeps running while
the prompt waits.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from rich.console import Console
from rich.markdown import Markdown

from askcli.engine.models import ApprovalDecision
from askcli.shared.formatters.tool_call import format_tool_call

logger = logging.getLogger(__name__)


def parse_decision(answer: str | None) -> ApprovalDecision:
    """y/yes approve once, a/all approve always, anything else denies."""
    choice = (answer or "").strip().lower()
    if choice in ("y", "yes"):
        return ApprovalDecision.APPROVE_ONCE
    if choice in ("a", "all"):
        return ApprovalDecision.APPROVE_ALWAYS
    return ApprovalDecision.DENY


class TerminalOperator:
    """Operator I/O over a rich console."""

    def __init__(
        self,
        *,
        verbose: bool = False,
        console: Console | None = None,
        out: Console | None = None,
        input_fn: Callable[[str], str] = input,
    ) -> None:
        self._verbose = verbose
        self._console = console or Console(stderr=True)
        self._out = out or Console()
        self._input = input_fn

    async def ask_permission(self, tool_name: str, arguments: dict[str, Any]) -> ApprovalDecision:
        summary = format_tool_call(tool_name, arguments, verbose=self._verbose)
        self._console.print(summary, markup=False, highlight=False)
        self._console.print(f"Execute '{tool_name}'? [y/N/A]: ", markup=False, end="")
        try:
            answer = await asyncio.to_thread(self._input, "")
        except EOFError:
            logger.info("No operator input for '%s' (EOF); denying", tool_name)
            self._console.print()
            return ApprovalDecision.DENY
        decision = parse_decision(answer)
        if decision is ApprovalDecision.APPROVE_ALWAYS:
            self._console.print(
                f"All future '{tool_name}' calls will be auto-approved.", style="dim",
            )
        return decision

    def show_auto_approved(self, tool_name: str, arguments: dict[str, Any]) -> None:
        summary = format_tool_call(tool_name, arguments, verbose=self._verbose)
        self._console.print(summary, markup=False, highlight=False)
        if self._verbose:
            self._console.print("[Auto-approved]", markup=False, style="dim")

    def show_tool_result(self, tool_name: str, result: str) -> None:
        """Echo a tool result in verbose mode."""
        if not self._verbose:
            return
        self._console.print(f"[{tool_name} result]", markup=False, style="dim")
        self._console.print(result, markup=False, highlight=False, style="dim")

    def notice(self, message: str) -> None:
        self._console.print(message, markup=False, style="dim")

    def warning(self, message: str) -> None:
        self._console.print(f"Warning: {message}", markup=False, style="yellow")

    def error(self, message: str) -> None:
        self._console.print(f"Error: {message}", markup=False, style="bold red")

    def show_answer(self, text: str) -> None:
        self._out.print(Markdown(text))

    def print(self, text: str = "") -> None:
        """Plain stdout line for management commands."""
        self._out.print(text, markup=False, highlight=False)

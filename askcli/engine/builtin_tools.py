"""Built-in tools that run in-process.

execute_command runs one command line through the platform shell;
list_directory and read_file give the model cheap read access to the
working tree without spawning anything.
"""
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

from .errors import ToolExecutionError
from .models import BuiltinBinding, ToolDescriptor
from .prompt import POWERSHELL, detect_shell_kind

logger = logging.getLogger(__name__)

# read_file refuses anything larger.
MAX_READ_BYTES = 1024 * 1024

EXECUTE_COMMAND_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string", "description": "The command to be executed"},
        "working_directory": {
            "type": "string",
            "description": "The working directory for the command execution (optional)",
        },
    },
    "required": ["command", "working_directory"],
}

LIST_DIRECTORY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "Directory to list"},
    },
    "required": ["path"],
}

READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "string", "description": "File to read"},
    },
    "required": ["path"],
}


def shell_invocation(command: str, shell_kind: str | None = None) -> list[str]:
    """Argument vector that runs command through the platform shell."""
    if sys.platform == "win32":
        if (shell_kind or detect_shell_kind()) == POWERSHELL:
            return ["powershell", "-Command", command]
        return ["cmd", "/C", command]
    return ["sh", "-c", command]


def format_command_output(stdout: str, stderr: str) -> str:
    if stderr:
        return f"stdout:\n{stdout}\n---\nstderr:\n{stderr}"
    return stdout or "Executed"


def _require_str(arguments: dict[str, Any], key: str, tool_name: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise ToolExecutionError(tool_name, f"missing required argument '{key}'")
    return value


async def execute_command(arguments: dict[str, Any], *, timeout: float = 600.0) -> str:
    command = _require_str(arguments, "command", "execute_command")
    cwd = arguments.get("working_directory") or "."
    if not isinstance(cwd, str):
        raise ToolExecutionError("execute_command", "'working_directory' must be a string")
    try:
        is_dir = Path(cwd).is_dir()
    except ValueError:
        is_dir = False
    if not is_dir:
        raise ToolExecutionError("execute_command", f"working directory not found: {cwd}")

    argv = shell_invocation(command)
    logger.info("execute_command cwd=%s: %s", cwd, command)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except (OSError, ValueError) as exc:
        return f"Failed to execute command '{command}': {exc}"

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ToolExecutionError(
            "execute_command", f"command timed out after {timeout:g}s",
        ) from None
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    logger.debug("execute_command exited rc=%s", proc.returncode)
    return format_command_output(
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def list_directory(arguments: dict[str, Any]) -> str:
    path = Path(_require_str(arguments, "path", "list_directory")).expanduser()
    try:
        items = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    except ValueError as exc:
        raise ToolExecutionError("list_directory", f"cannot list {path}: {exc}") from exc
    except OSError as exc:
        raise ToolExecutionError("list_directory", f"cannot list {path}: {exc.strerror or exc}") from exc
    if not items:
        return f"{path} is empty"
    return "\n".join(f"{p.name}/" if p.is_dir() else p.name for p in items)


async def read_file(arguments: dict[str, Any]) -> str:
    path = Path(_require_str(arguments, "path", "read_file")).expanduser()
    try:
        size = path.stat().st_size
        if size > MAX_READ_BYTES:
            raise ToolExecutionError(
                "read_file", f"{path} is {size} bytes; limit is {MAX_READ_BYTES}",
            )
        return path.read_text(encoding="utf-8", errors="replace")
    except IsADirectoryError as exc:
        raise ToolExecutionError("read_file", f"{path} is a directory") from exc
    except ValueError as exc:
        raise ToolExecutionError("read_file", f"cannot read {path}: {exc}") from exc
    except OSError as exc:
        raise ToolExecutionError("read_file", f"cannot read {path}: {exc.strerror or exc}") from exc


def builtin_tools(*, command_timeout: float = 600.0) -> list[ToolDescriptor]:
    """Built-in tool descriptors in registration order."""

    async def _execute_command(arguments: dict[str, Any]) -> str:
        return await execute_command(arguments, timeout=command_timeout)

    return [
        ToolDescriptor(
            name="execute_command",
            description="Execute a command on the Operating System",
            input_schema=EXECUTE_COMMAND_SCHEMA,
            binding=BuiltinBinding(_execute_command),
        ),
        ToolDescriptor(
            name="list_directory",
            description="List the entries of a directory; subdirectories end with '/'",
            input_schema=LIST_DIRECTORY_SCHEMA,
            binding=BuiltinBinding(list_directory),
        ),
        ToolDescriptor(
            name="read_file",
            description="Read a UTF-8 text file",
            input_schema=READ_FILE_SCHEMA,
            binding=BuiltinBinding(read_file),
        ),
    ]

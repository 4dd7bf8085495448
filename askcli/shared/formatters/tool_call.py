"""One-line summaries of tool calls for the approval prompt.

Registry-based: a formatter is a function decorated with the tool name
it renders. Anything without a formatter (and everything in verbose
mode) is shown as the tool name plus pretty-printed JSON arguments.

    @tool_formatter("filesystem_read_text_file")
    def _read_text_file(args):
        return f"Reading {_q(args.get('path'))}"
"""

from __future__ import annotations

import json
from typing import Any, Callable

_FORMATTERS: dict[str, Callable[[dict[str, Any]], str]] = {}


def tool_formatter(*names: str):
    """Decorator to register a formatter for one or more tool names."""

    def decorator(fn: Callable[[dict[str, Any]], str]):
        for name in names:
            _FORMATTERS[name] = fn
        return fn

    return decorator


def format_tool_call(name: str, arguments: dict[str, Any], *, verbose: bool = False) -> str:
    """Summary shown before a call runs."""
    formatter = None if verbose else _FORMATTERS.get(name)
    if formatter is not None:
        try:
            return formatter(arguments)
        except (KeyError, TypeError, AttributeError):
            pass
    return _generic(name, arguments)


def format_raw_tool_call(name: str, raw_arguments: str, *, verbose: bool = False) -> str:
    """Like format_tool_call() but for the model's undecoded argument text."""
    try:
        arguments = json.loads(raw_arguments or "{}")
    except json.JSONDecodeError:
        return f"Tool: {name}\nArguments: {raw_arguments}"
    if not isinstance(arguments, dict):
        return f"Tool: {name}\nArguments: {raw_arguments}"
    return format_tool_call(name, arguments, verbose=verbose)


def _generic(name: str, arguments: dict[str, Any]) -> str:
    pretty = json.dumps(arguments, indent=2, ensure_ascii=False)
    return f"Executing {name}\nArguments:\n{pretty}"


def _q(value: Any) -> str:
    """JSON-quote a value the way it appeared in the arguments."""
    return json.dumps(value, ensure_ascii=False)


def _join(values: Any) -> str:
    return ", ".join(_q(v) for v in values or [])


# ── Built-in tools ──


@tool_formatter("execute_command")
def _execute_command(args: dict[str, Any]) -> str:
    command = args["command"]
    cwd = args.get("working_directory")
    if cwd and cwd != ".":
        return f"{command}\n(in {cwd})"
    return command


@tool_formatter("list_directory")
def _list_directory(args: dict[str, Any]) -> str:
    return f"Listing Files ({_q(args['path'])})"


@tool_formatter("read_file")
def _read_file(args: dict[str, Any]) -> str:
    return f"Reading {_q(args['path'])}"


# ── filesystem server ──


@tool_formatter("filesystem_read_text_file", "filesystem_read_file")
def _fs_read(args: dict[str, Any]) -> str:
    return f"Reading {_q(args['path'])}"


@tool_formatter("filesystem_read_multiple_files")
def _fs_read_many(args: dict[str, Any]) -> str:
    return f"Reading ({_join(args['paths'])})"


@tool_formatter("filesystem_get_file_info")
def _fs_info(args: dict[str, Any]) -> str:
    return f"Reading File Metadata ({_q(args['path'])})"


@tool_formatter("filesystem_list_directory")
def _fs_list(args: dict[str, Any]) -> str:
    return f"Listing Files ({_q(args['path'])})"


@tool_formatter("filesystem_list_directory_with_sizes")
def _fs_list_sizes(args: dict[str, Any]) -> str:
    return f"Listing Files with sizes ({_q(args['path'])})"


@tool_formatter("filesystem_directory_tree")
def _fs_tree(args: dict[str, Any]) -> str:
    text = f"Listing Directory Tree ({_q(args['path'])})"
    excludes = args.get("excludePatterns")
    if excludes:
        text += f" excluding {_join(excludes)}"
    return text


@tool_formatter("filesystem_list_allowed_directories")
def _fs_allowed(args: dict[str, Any]) -> str:
    return "Listing Allowed Directories"


@tool_formatter("filesystem_search_files")
def _fs_search(args: dict[str, Any]) -> str:
    return f"Searching({_q(args['pattern'])}) in {_q(args['path'])}"


@tool_formatter("filesystem_write_file")
def _fs_write(args: dict[str, Any]) -> str:
    return f"Writing {_q(args['path'])}:\n{args.get('content', '')}"


@tool_formatter("filesystem_create_directory")
def _fs_mkdir(args: dict[str, Any]) -> str:
    return f"Creating Directory ({_q(args['path'])})"


@tool_formatter("filesystem_move_file")
def _fs_move(args: dict[str, Any]) -> str:
    return f"Moving {_q(args['source'])} to {_q(args['destination'])}"

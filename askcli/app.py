"""askcli command-line entry point.

Usage:
    askcli "How much disk space is left?"
    askcli --model mini --session infra "Which containers are running?"
    askcli mcp add filesystem npx --args -y,@modelcontextprotocol/server-filesystem,.
    askcli session show infra
    askcli model alias mini gpt-4.1-mini
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from askcli.adapters.permission_store import PermissionStore
from askcli.adapters.terminal_operator import TerminalOperator
from askcli.engine.agent_loop import AgentLoop
from askcli.engine.builtin_tools import builtin_tools
from askcli.engine.config import DEFAULT_MODEL, EngineConfig
from askcli.engine.errors import (
    AgentCancelledError,
    AskError,
    ConfigError,
    RegistrationConflict,
)
from askcli.engine.permissions import ApprovalState, PermissionGate
from askcli.engine.providers import OpenAIProvider, Provider
from askcli.engine.servers import ToolServerManager
from askcli.engine.tool_cache import ToolCache
from askcli.engine.tool_registry import ToolRegistry
from askcli.engine.transport import ProcessTransportManager
from askcli.shared.services.config_store import AskConfig, ConfigStore
from askcli.shared.services.session_store import (
    DEFAULT_SESSION,
    SessionStore,
    describe_age,
    validate_session_name,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

COMMANDS = ("mcp", "session", "model", "set-base-url")


def _configure_logging(config: EngineConfig, verbose: bool) -> Path:
    """File log always; stderr log only with --verbose."""
    log_dir = config.log_dir
    log_file = log_dir / "askcli.log"

    root = logging.getLogger()
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    root.setLevel(level)
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError:
        # Unwritable home; run without a log file.
        root.addHandler(logging.NullHandler())
    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    # Keep HTTP client chatter out of the log unless debugging.
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)
    return log_file


# ── Argument parsing ───────────────────────────────────────────────


def _build_question_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="askcli",
        description="Ask a language model to get things done with tools",
        epilog=f"Management commands: {', '.join(COMMANDS)} (askcli <command> --help)",
    )
    parser.add_argument(
        "question",
        nargs="*",
        help="The question or task (read from stdin when omitted)",
    )
    parser.add_argument(
        "--model", "-m",
        default=None,
        help=f"Model or alias to use (default: config defaultModel, else {DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--session", "-s",
        default=None,
        help="Resume and save to a named session",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging, full tool arguments and tool results",
    )
    return parser


def _build_command_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="askcli")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    mcp = commands.add_parser("mcp", help="Tool server management")
    mcp_commands = mcp.add_subparsers(dest="action", required=True)
    mcp_commands.add_parser("list", help="List configured tool servers")
    add = mcp_commands.add_parser("add", help="Add a tool server")
    add.add_argument("name", help="Server name (used as tool prefix)")
    add.add_argument("server_command", metavar="COMMAND", help='Command to execute (e.g. "uvx", "npx")')
    add.add_argument("--args", "-a", default="", help="Comma-separated arguments")
    add.add_argument("--env", "-e", default="", help="Comma-separated KEY=VALUE pairs")
    remove = mcp_commands.add_parser("remove", help="Remove a tool server")
    remove.add_argument("name")

    session = commands.add_parser("session", help="Saved conversations")
    session_commands = session.add_subparsers(dest="action", required=True)
    session_commands.add_parser("list", help="List saved sessions")
    show = session_commands.add_parser("show", help="Show a session's conversation")
    show.add_argument("name", nargs="?", default=None)
    save = session_commands.add_parser("save", help="Save the last conversation under a name")
    save.add_argument("name")

    model = commands.add_parser("model", help="Default model and aliases")
    model_commands = model.add_subparsers(dest="action", required=True)
    model_commands.add_parser("get", help="Show the default model")
    model_set = model_commands.add_parser("set", help="Set the default model")
    model_set.add_argument("model")
    model_commands.add_parser("aliases", help="List model aliases")
    alias = model_commands.add_parser("alias", help="Define a model alias")
    alias.add_argument("alias")
    alias.add_argument("model")
    unalias = model_commands.add_parser("unalias", help="Remove a model alias")
    unalias.add_argument("alias")

    base_url = commands.add_parser("set-base-url", help="Set the OpenAI-compatible API base URL")
    base_url.add_argument("url")
    return parser


def _split_list(value: str) -> list[str]:
    return [item for item in value.split(",") if item]


def _parse_env_pairs(value: str) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in _split_list(value):
        key, sep, val = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid env entry {pair!r}; expected KEY=VALUE")
        env[key] = val
    return env


# ── Question flow ──────────────────────────────────────────────────


def resolve_model(requested: str | None, config: EngineConfig, ask_config: AskConfig) -> str:
    """--model, then ASK_MODEL, then defaultModel, then the built-in default."""
    name = requested or config.model or ask_config.default_model or DEFAULT_MODEL
    return ask_config.resolve_model(name)


async def ask(
    question: str,
    *,
    config: EngineConfig,
    ask_config: AskConfig,
    config_store: ConfigStore,
    operator: TerminalOperator,
    model: str,
    session_name: str | None = None,
    provider: Provider | None = None,
) -> str:
    """Answer one question with tools; returns the final answer text."""
    sessions = SessionStore(config.sessions_dir)
    history: list[dict[str, Any]] | None = None
    if session_name:
        history = sessions.load(session_name)
        if history is None:
            operator.notice(f"Session '{session_name}' not found; starting a new one")

    provider = provider or OpenAIProvider(base_url=ask_config.base_url)
    cache = ToolCache(config.tool_cache_path) if config.tool_cache_enabled else None

    async def on_event(event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == "tool_auto_approved":
            operator.show_auto_approved(event["tool_name"], event.get("arguments") or {})
        elif kind == "tool_call_finished":
            operator.show_tool_result(event["tool_name"], event.get("result", ""))
        if config.event_callback is not None:
            await config.event_callback(event)

    try:
        async with ProcessTransportManager(
            receive_timeout=config.tool_timeout_seconds,
            launch_grace=config.launch_grace_seconds,
            shutdown_grace=config.shutdown_grace_seconds,
        ) as transport:
            servers = ToolServerManager(
                ask_config.to_server_descriptors(),
                transport,
                timeout=config.tool_timeout_seconds,
                cache=cache,
            )
            try:
                for notice in await servers.start_all():
                    operator.warning(f"Tool server '{notice.server_name}' {notice.message}")

                registry = ToolRegistry(servers)
                for tool in builtin_tools(command_timeout=config.command_timeout_seconds):
                    try:
                        registry.register(tool)
                    except RegistrationConflict as exc:
                        logger.warning("%s; dropping it", exc)
                servers.register_tools(registry)
                logger.info("Tool catalog has %d tool(s)", len(registry))

                approvals = PermissionStore(config_store)
                gate = PermissionGate(
                    ApprovalState.from_names(approvals.load()),
                    operator.ask_permission,
                    store=approvals,
                    event_callback=on_event,
                )
                loop = AgentLoop(
                    provider,
                    registry,
                    gate,
                    model=model,
                    max_rounds=config.max_rounds,
                    event_callback=on_event,
                )
                result = await loop.run(question, history)
            finally:
                await servers.shutdown()
    finally:
        await provider.shutdown()

    try:
        sessions.save(session_name or DEFAULT_SESSION, result.conversation.messages)
    except (OSError, ValueError) as exc:
        operator.warning(f"Failed to save session: {exc}")
    return result.answer


def _load_engine_config(operator: TerminalOperator) -> EngineConfig | None:
    try:
        return EngineConfig.from_env()
    except ConfigError as exc:
        operator.error(str(exc))
        return None


def _read_question(words: list[str]) -> str:
    if words:
        return " ".join(words)
    if not sys.stdin.isatty():
        return sys.stdin.read().strip()
    return ""


def _run_question(argv: list[str]) -> int:
    args = _build_question_parser().parse_args(argv)
    operator = TerminalOperator(verbose=args.verbose)
    config = _load_engine_config(operator)
    if config is None:
        return EXIT_ERROR
    log_file = _configure_logging(config, args.verbose)

    if args.session:
        try:
            validate_session_name(args.session)
        except ValueError as exc:
            operator.error(str(exc))
            return EXIT_ERROR

    question = _read_question(args.question)
    if not question:
        _build_question_parser().print_usage(sys.stderr)
        operator.error("No question given")
        return EXIT_ERROR

    config_store = ConfigStore(config.config_path)
    try:
        ask_config = config_store.load()
    except ConfigError as exc:
        operator.error(str(exc))
        return EXIT_ERROR
    if not config_store.exists() and args.verbose:
        operator.notice(f"No config at {config_store.path}; running with built-in tools only")

    model = resolve_model(args.model, config, ask_config)
    logger.info("Starting askcli model=%s session=%s log=%s", model, args.session, log_file)
    if args.verbose:
        operator.notice(f"Using model: {model}")

    try:
        answer = asyncio.run(ask(
            question,
            config=config,
            ask_config=ask_config,
            config_store=config_store,
            operator=operator,
            model=model,
            session_name=args.session,
        ))
    except AgentCancelledError:
        operator.notice("Cancelled.")
        return EXIT_INTERRUPTED
    except KeyboardInterrupt:
        operator.notice("Interrupted.")
        return EXIT_INTERRUPTED
    except AskError as exc:
        logger.error("Run failed: %s", exc)
        operator.error(str(exc))
        return EXIT_ERROR

    operator.show_answer(answer)
    return EXIT_OK


# ── Management commands ────────────────────────────────────────────


def _handle_mcp(args: argparse.Namespace, store: ConfigStore, operator: TerminalOperator) -> int:
    if args.action == "list":
        config = store.load()
        if not config.mcp_servers:
            operator.print("No tool servers configured")
            return EXIT_OK
        for name, server in config.mcp_servers.items():
            line = f"{name}: {server.command} {' '.join(server.args)}".rstrip()
            operator.print(line)
            if server.env:
                operator.print(f"  env: {', '.join(sorted(server.env))}")
        return EXIT_OK
    if args.action == "add":
        path = store.add_server(
            args.name, args.server_command,
            _split_list(args.args), _parse_env_pairs(args.env),
        )
        operator.print(f"Added tool server '{args.name}' to {path}")
        return EXIT_OK
    path = store.remove_server(args.name)
    operator.print(f"Removed tool server '{args.name}' from {path}")
    return EXIT_OK


def _show_session(name: str, sessions: SessionStore, operator: TerminalOperator) -> int:
    messages = sessions.load(name)
    if messages is None:
        operator.error(f"Session '{name}' not found")
        return EXIT_ERROR
    operator.print(f"=== Session: {name} ===")
    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if role not in ("user", "assistant") or not isinstance(content, str) or not content:
            continue
        operator.print("")
        operator.print("User:" if role == "user" else "Assistant:")
        operator.show_answer(content)
    return EXIT_OK


def _handle_session(args: argparse.Namespace, config: EngineConfig, operator: TerminalOperator) -> int:
    sessions = SessionStore(config.sessions_dir)
    if args.action == "list":
        for info in sessions.list():
            operator.print(f"{info.name:<20} {describe_age(info.modified)}")
        return EXIT_OK
    if args.action == "show":
        return _show_session(args.name or sessions.last_session_name(), sessions, operator)
    try:
        sessions.copy(DEFAULT_SESSION, args.name)
    except FileNotFoundError:
        operator.error("No session to save")
        return EXIT_ERROR
    operator.print(f"Saved session as {args.name}")
    return EXIT_OK


def _handle_model(args: argparse.Namespace, store: ConfigStore, operator: TerminalOperator) -> int:
    if args.action == "get":
        operator.print(store.load().default_model or DEFAULT_MODEL)
    elif args.action == "set":
        store.set_default_model(args.model)
        operator.print(f"Default model set to {args.model}")
    elif args.action == "aliases":
        aliases = store.load().model_aliases
        if not aliases:
            operator.print("No model aliases configured")
        for alias, model in aliases.items():
            operator.print(f"{alias}: {model}")
    elif args.action == "alias":
        store.set_model_alias(args.alias, args.model)
        operator.print(f"Model alias {args.alias} set to {args.model}")
    else:
        store.remove_model_alias(args.alias)
        operator.print("Model alias removed")
    return EXIT_OK


def _run_command(argv: list[str]) -> int:
    args = _build_command_parser().parse_args(argv)
    operator = TerminalOperator(verbose=args.verbose)
    config = _load_engine_config(operator)
    if config is None:
        return EXIT_ERROR
    _configure_logging(config, args.verbose)
    store = ConfigStore(config.config_path)
    try:
        if args.command == "mcp":
            return _handle_mcp(args, store, operator)
        if args.command == "session":
            return _handle_session(args, config, operator)
        if args.command == "model":
            return _handle_model(args, store, operator)
        store.set_base_url(args.url)
        operator.print(f"Base URL set to {args.url}")
        return EXIT_OK
    except (AskError, ValueError, OSError) as exc:
        operator.error(str(exc))
        return EXIT_ERROR


def run(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    first = next((a for a in argv if not a.startswith("-")), None)
    if first in COMMANDS and argv and argv[0] in COMMANDS + ("-v", "--verbose"):
        return _run_command(argv)
    return _run_question(argv)


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()

"""Exception hierarchy for the tool-orchestration engine.

One exception per failure mode. Containment is decided by the caller:
server-scoped errors disable or relaunch one server, tool-scoped errors
become tool results, and only configuration and model API errors end
the run.
"""
from __future__ import annotations


class AskError(Exception):
    """Base exception for all askcli errors."""


class ConfigError(AskError):
    """The configuration file could not be read or parsed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load config {path}: {reason}")


# ── Tool-server errors ─────────────────────────────────────────────

class ServerError(AskError):
    """Base for failures scoped to a single tool server."""
    def __init__(self, server_name: str, reason: str):
        self.server_name = server_name
        self.reason = reason
        super().__init__(f"Tool server '{server_name}': {reason}")


class LaunchError(ServerError):
    """The server process could not be started or exited immediately."""


class ProtocolError(ServerError):
    """The server sent a malformed or incompatible response."""


class TransportError(ServerError):
    """The channel to the server is closed or broke mid-exchange."""


class RequestCancelledError(TransportError):
    """A pending request was abandoned because its session died."""
    def __init__(self, server_name: str, request_id: int, reason: str):
        self.request_id = request_id
        super().__init__(
            server_name, f"request {request_id} cancelled: {reason}",
        )


class ServerTimeoutError(ServerError):
    """No message arrived from the server within the timeout.

    Slow and dead servers are indistinguishable; both end up here.
    """
    def __init__(self, server_name: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            server_name, f"no response after {timeout_seconds:g}s",
        )


# ── Tool errors ────────────────────────────────────────────────────

class ToolExecutionError(AskError):
    """The tool ran and reported a failure."""
    def __init__(self, tool_name: str, detail: str):
        self.tool_name = tool_name
        self.detail = detail
        super().__init__(f"Tool '{tool_name}' failed: {detail}")


class ToolNotFoundError(AskError):
    """No registered tool carries the requested name."""
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class RegistrationConflict(AskError):
    """A tool name is already taken by an earlier registration."""
    def __init__(self, tool_name: str, existing_owner: str, rejected_owner: str):
        self.tool_name = tool_name
        self.existing_owner = existing_owner
        self.rejected_owner = rejected_owner
        super().__init__(
            f"Tool '{tool_name}' from {rejected_owner} conflicts with "
            f"the one already registered by {existing_owner}"
        )


# ── Agent loop errors ──────────────────────────────────────────────

class ResourceExhaustedError(AskError):
    """The agent loop hit its round limit without a final answer."""
    def __init__(self, max_rounds: int):
        self.max_rounds = max_rounds
        super().__init__(f"No response after {max_rounds} rounds")


class AgentCancelledError(AskError):
    """The agent loop was cancelled between steps."""


class ModelAPIError(AskError):
    """The model API rejected the request (auth, quota, bad request)."""


class ResponseTruncatedError(ModelAPIError):
    """The model stopped because the response hit its length limit."""
    def __init__(self) -> None:
        super().__init__("Response too long")

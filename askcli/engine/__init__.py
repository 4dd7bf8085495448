"""Tool-orchestration engine.

Transport and protocol client for stdio tool servers, the unified tool
registry, the permission gate and the agent loop.
"""
from .agent_loop import AgentLoop, AgentResult
from .config import EngineConfig
from .permissions import ApprovalState, PermissionGate
from .servers import ToolServerManager
from .tool_registry import ToolRegistry
from .transport import ProcessTransportManager

__all__ = [
    "AgentLoop",
    "AgentResult",
    "ApprovalState",
    "EngineConfig",
    "PermissionGate",
    "ProcessTransportManager",
    "ToolRegistry",
    "ToolServerManager",
]

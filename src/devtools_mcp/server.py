"""
Devtools MCP server core.

Holds everything sessions share: the immutable tool registry, the
invocation dispatcher and the server identity. Constructing a server has
no side effects; binding a port is the listener's job.
"""

from typing import Any, Dict, Iterable, Optional

from common.config import ServerConfig
from common.logging import get_logger
from .dispatcher import InvocationDispatcher
from .jsonrpc import (
    LATEST_PROTOCOL_VERSION,
    MCPCapabilities,
    MCPImplementation,
    MCPInitializeResult,
    ServerFeatures,
)
from .session import Send, Session
from .tool_registry import ToolRegistry

logger = get_logger(__name__)

DEFAULT_INSTRUCTIONS = (
    "This server exposes read-only introspection tools for a running Python process. "
    "Use 'tools/list' to discover the available tools; every call returns either "
    "{ok: true, value} or {ok: false, errorKind, message}."
)


class DevToolsMCPServer:
    """Shared, read-only state behind every session."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: Optional[ServerConfig] = None,
        instructions: Optional[str] = None,
    ):
        self.config = config or ServerConfig()
        self.registry = registry
        self.dispatcher = InvocationDispatcher(registry, max_workers=self.config.max_workers)
        self.instructions = instructions or DEFAULT_INSTRUCTIONS

        self.server_info = MCPImplementation(name=self.config.name, version=self.config.version)
        self.capabilities = MCPCapabilities(
            tools={"listChanged": False},  # Registry is fixed for the process lifetime
            logging={},
        )

    def new_session(self, send: Send, session_id: Optional[str] = None) -> Session:
        """Create an unopened session bound to a transport's send function."""
        return Session(self, send, session_id=session_id)

    def initialize_result(
        self, protocol_version: str, features: Iterable[str]
    ) -> MCPInitializeResult:
        return MCPInitializeResult(
            protocolVersion=protocol_version,
            capabilities=self.capabilities,
            serverInfo=self.server_info,
            features=sorted(features),
            instructions=self.instructions,
        )

    def health_check(self, active_sessions: int = 0) -> Dict[str, Any]:
        """Report server status for the /health endpoint."""
        return {
            "status": "healthy",
            "server": self.server_info.model_dump(),
            "protocol_version": LATEST_PROTOCOL_VERSION,
            "tools_count": len(self.registry),
            "active_sessions": active_sessions,
            "capabilities": sorted(ServerFeatures.ALL),
        }

    def shutdown(self) -> None:
        """Release the worker pool. Sessions must be closed first."""
        self.dispatcher.shutdown()
        logger.info(event="server_shutdown", tools_count=len(self.registry))


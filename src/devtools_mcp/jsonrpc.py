"""
JSON-RPC 2.0 Protocol Implementation for the devtools MCP server

Every message exchanged on a session is wrapped in a JSON-RPC envelope.
Method names follow the Model Context Protocol, plus an explicit
``shutdown`` request that closes the session.

Reference: https://www.jsonrpc.org/specification
MCP Spec: https://spec.modelcontextprotocol.io/specification/2025-06-18/basic/
"""

from typing import Any, Dict, FrozenSet, List, Optional, Union, Literal

from pydantic import BaseModel, Field

# JSON-RPC version constant
JSONRPC_VERSION = "2.0"

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server-defined error codes
PROTOCOL_VIOLATION = -32003

# Protocol versions, oldest first
SUPPORTED_PROTOCOL_VERSIONS = ["2024-11-05", "2025-03-26", "2025-06-18"]
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[-1]


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request message."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 response message (success)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    result: Any


class JSONRPCErrorResponse(BaseModel):
    """JSON-RPC 2.0 response message (error)."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None]
    error: JSONRPCError


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 notification message (no response expected)."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


# Union type for all JSON-RPC messages
JSONRPCMessage = Union[JSONRPCRequest, JSONRPCResponse, JSONRPCErrorResponse, JSONRPCNotification]


class MCPMethods:
    """Method names understood by a session."""

    # Core protocol
    INITIALIZE = "initialize"
    INITIALIZED = "notifications/initialized"
    PING = "ping"
    SHUTDOWN = "shutdown"

    # Tools
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"

    # Logging
    LOGGING_SET_LEVEL = "logging/setLevel"
    LOGGING_MESSAGE = "notifications/message"

    # Cancellation
    CANCEL = "notifications/cancelled"

    # Progress
    PROGRESS = "notifications/progress"


class ServerFeatures:
    """Protocol features a session can negotiate."""

    TOOLS_LIST = "tools.list"
    TOOLS_CALL = "tools.call"
    NOTIFICATIONS = "notifications"

    ALL = frozenset({TOOLS_LIST, TOOLS_CALL, NOTIFICATIONS})


class MCPCapabilities(BaseModel):
    """MCP server capabilities."""

    experimental: Optional[Dict[str, Any]] = None
    logging: Optional[Dict[str, Any]] = None
    tools: Optional[Dict[str, Any]] = None


class MCPClientCapabilities(BaseModel):
    """MCP client capabilities."""

    experimental: Optional[Dict[str, Any]] = None
    roots: Optional[Dict[str, Any]] = None
    sampling: Optional[Dict[str, Any]] = None
    elicitation: Optional[Dict[str, Any]] = None


class MCPImplementation(BaseModel):
    """MCP implementation info."""

    name: str
    version: str


class MCPInitializeParams(BaseModel):
    """Parameters for initialize request."""

    protocolVersion: str = LATEST_PROTOCOL_VERSION
    capabilities: MCPClientCapabilities = Field(default_factory=MCPClientCapabilities)
    clientInfo: Optional[MCPImplementation] = None
    # Optional restriction of the server feature set
    features: Optional[List[str]] = None


class MCPInitializeResult(BaseModel):
    """Result for initialize response."""

    protocolVersion: str
    capabilities: MCPCapabilities
    serverInfo: MCPImplementation
    features: List[str]
    instructions: Optional[str] = None


class MCPToolsCallParams(BaseModel):
    """Parameters for tools/call request."""

    name: str
    arguments: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = Field(default=None, alias="_meta")


class MCPSetLevelParams(BaseModel):
    """Parameters for logging/setLevel request."""

    level: Literal[
        "debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"
    ]


class JSONRPCHandler:
    """Handler for JSON-RPC message processing."""

    @staticmethod
    def create_request(
        id: Union[str, int], method: str, params: Optional[Dict[str, Any]] = None
    ) -> JSONRPCRequest:
        """Create a JSON-RPC request."""
        return JSONRPCRequest(id=id, method=method, params=params)

    @staticmethod
    def create_response(id: Union[str, int], result: Any) -> JSONRPCResponse:
        """Create a JSON-RPC success response."""
        return JSONRPCResponse(id=id, result=result)

    @staticmethod
    def create_error_response(
        id: Union[str, int, None], code: int, message: str, data: Optional[Any] = None
    ) -> JSONRPCErrorResponse:
        """Create a JSON-RPC error response."""
        error = JSONRPCError(code=code, message=message, data=data)
        return JSONRPCErrorResponse(id=id, error=error)

    @staticmethod
    def create_notification(
        method: str, params: Optional[Dict[str, Any]] = None
    ) -> JSONRPCNotification:
        """Create a JSON-RPC notification."""
        return JSONRPCNotification(method=method, params=params)

    @staticmethod
    def parse_message(data: Dict[str, Any]) -> JSONRPCMessage:
        """Parse a raw JSON object into a JSON-RPC message."""
        if not isinstance(data, dict):
            raise ValueError(f"Invalid JSON-RPC message: {data!r}")

        if "id" in data:
            if "method" in data:
                return JSONRPCRequest.model_validate(data)
            elif "result" in data:
                return JSONRPCResponse.model_validate(data)
            elif "error" in data:
                return JSONRPCErrorResponse.model_validate(data)
        elif "method" in data:
            return JSONRPCNotification.model_validate(data)

        raise ValueError(f"Invalid JSON-RPC message: {data}")

    @staticmethod
    def is_batch(data: Any) -> bool:
        """Check if the data represents a JSON-RPC batch."""
        return isinstance(data, list)


def negotiate_protocol_version(requested: Optional[str]) -> str:
    """
    Pick the protocol version for a session.

    The caller's version wins when supported; otherwise the newest supported
    version that is not newer than the caller's, falling back to the latest.
    """
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested

    if requested:
        older = [v for v in SUPPORTED_PROTOCOL_VERSIONS if v <= requested]
        if older:
            return older[-1]

    return LATEST_PROTOCOL_VERSION


def negotiate_features(requested: Optional[List[str]]) -> FrozenSet[str]:
    """Intersection of the server feature set with the caller's, when given."""
    if requested is None:
        return ServerFeatures.ALL
    return ServerFeatures.ALL & frozenset(requested)

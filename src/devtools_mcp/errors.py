"""
Error taxonomy for the devtools MCP server.

Invocation-level failures never cross the session boundary as exceptions:
they are converted to structured payloads tagged with an ErrorKind. Only
assembly and listener failures are raised to the caller of the server.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Error kinds a caller can branch on."""

    UNKNOWN_TOOL = "UnknownTool"
    INVALID_ARGUMENTS = "InvalidArguments"
    EXECUTION_FAILED = "ExecutionFailed"
    PROTOCOL_VIOLATION = "ProtocolViolation"
    CAPABILITY_PROBE_FAILED = "CapabilityProbeFailed"
    ASSEMBLY_ERROR = "AssemblyError"


class DevToolsError(Exception):
    """Base class for devtools MCP server errors."""

    kind: Optional[ErrorKind] = None


class AssemblyError(DevToolsError):
    """Two simultaneously active provider groups declare the same tool name."""

    kind = ErrorKind.ASSEMBLY_ERROR


class ToolExtractionError(DevToolsError):
    """A tool's declared schema does not match its handler."""

    kind = ErrorKind.ASSEMBLY_ERROR

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}': {reason}")
        self.tool_name = tool_name
        self.reason = reason


class ListenerError(DevToolsError):
    """The listener could not bind its port or the HTTP server failed to start."""


class ProtocolViolation(DevToolsError):
    """A message arrived in a session state that does not accept it."""

    kind = ErrorKind.PROTOCOL_VIOLATION

    def __init__(self, message: str, state: str):
        super().__init__(message)
        self.state = state

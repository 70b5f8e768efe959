"""
Invocation Dispatcher

Executes a named call against the registry and always returns an
InvocationResult: unknown tools, invalid arguments and handler failures are
converted to error results, never raised into the session.

Blocking handlers run on a worker pool so the session's transport keeps
servicing close signals while a long call is in flight.
"""

import asyncio
import functools
import inspect
import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from common.logging import get_logger
from .errors import ErrorKind
from .jsonrpc import MCPMethods
from .tool_registry import (
    CONTEXT_PARAMETER,
    ToolDescriptor,
    ToolParameter,
    ToolParameterType,
    ToolRegistry,
)

logger = get_logger(__name__)

# RFC 5424 severities, as used by notifications/message
LOG_LEVELS = ["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]

Emit = Callable[[str, Dict[str, Any]], None]


def log_level_index(level: str) -> int:
    """Position of a level in LOG_LEVELS, raising ValueError for unknown levels."""
    return LOG_LEVELS.index(level.lower())


class ToolContext:
    """
    Notification channel handed to tools that declare ``uses_context``.

    Safe to use from worker threads: events are marshalled onto the session
    loop in emission order, ahead of the call's terminal response. Events
    emitted after the call finished or the session closed are dropped.
    """

    def __init__(
        self,
        tool_name: str,
        emit: Optional[Emit] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        progress_token: Union[str, int, None] = None,
        min_level: str = "debug",
    ):
        self.tool_name = tool_name
        self.progress_token = progress_token
        self._emit = emit
        self._loop = loop
        self._min_level = log_level_index(min_level)
        self._closed = emit is None

    @property
    def closed(self) -> bool:
        return self._closed

    def log(self, message: str, level: str = "info", **data: Any) -> None:
        """Emit a notifications/message event for this call."""
        try:
            if log_level_index(level) < self._min_level:
                return
        except ValueError:
            level = "info"

        self._send(
            MCPMethods.LOGGING_MESSAGE,
            {"level": level, "logger": self.tool_name, "data": {"message": message, **data}},
        )

    def progress(
        self, progress: float, total: Optional[float] = None, message: Optional[str] = None
    ) -> None:
        """Emit a notifications/progress event for this call."""
        params: Dict[str, Any] = {"progressToken": self.progress_token, "progress": progress}
        if total is not None:
            params["total"] = total
        if message is not None:
            params["message"] = message
        self._send(MCPMethods.PROGRESS, params)

    def close(self) -> None:
        self._closed = True

    def _send(self, method: str, params: Dict[str, Any]) -> None:
        if self._closed or self._loop is None:
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self._loop:
            self._deliver(method, params)
        else:
            try:
                self._loop.call_soon_threadsafe(self._deliver, method, params)
            except RuntimeError:
                # Session loop already shut down
                self._closed = True

    def _deliver(self, method: str, params: Dict[str, Any]) -> None:
        if not self._closed and self._emit is not None:
            self._emit(method, params)


@dataclass
class InvocationResult:
    """Result of a tool invocation: exactly one of value or error."""

    ok: bool
    value: Any = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    execution_time_ms: Optional[float] = None
    text: Optional[str] = None

    @classmethod
    def success(
        cls, value: Any, execution_time_ms: Optional[float] = None, text: Optional[str] = None
    ) -> "InvocationResult":
        return cls(ok=True, value=value, execution_time_ms=execution_time_ms, text=text)

    @classmethod
    def failure(
        cls, kind: ErrorKind, message: str, execution_time_ms: Optional[float] = None
    ) -> "InvocationResult":
        return cls(ok=False, error_kind=kind, message=message, execution_time_ms=execution_time_ms)

    def to_wire(self) -> Dict[str, Any]:
        """Payload of a tools/call result, with MCP content blocks alongside."""
        if self.ok:
            text = self.text if self.text is not None else _as_text(self.value)
            return {
                "ok": True,
                "value": self.value,
                "content": [{"type": "text", "text": text}],
                "isError": False,
            }

        return {
            "ok": False,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "content": [{"type": "text", "text": self.message or ""}],
            "isError": True,
        }


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class InvocationDispatcher:
    """Validates and executes tool calls against a read-only registry."""

    def __init__(self, registry: ToolRegistry, max_workers: int = 8):
        self.registry = registry
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="devtools-tool"
        )

    async def invoke(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        context: Optional[ToolContext] = None,
    ) -> InvocationResult:
        """
        Execute a tool with given arguments.

        Args:
            tool_name: Name of the tool to execute
            arguments: Arguments keyed by parameter name; unknown keys are ignored
            context: Notification channel for tools that declare uses_context

        Returns:
            InvocationResult with either the handler's value or an error kind
        """
        start_time = time.perf_counter()

        descriptor = self.registry.get(tool_name)
        if descriptor is None:
            logger.warning(event="unknown_tool", tool_name=tool_name)
            return InvocationResult.failure(
                ErrorKind.UNKNOWN_TOOL,
                f"Tool '{tool_name}' not found. Available tools: {self.registry.names()}",
            )

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return InvocationResult.failure(
                ErrorKind.INVALID_ARGUMENTS, "Arguments must be an object keyed by parameter name"
            )

        validation_error = self.validate_arguments(descriptor, arguments)
        if validation_error:
            logger.info(
                event="tool_arguments_rejected", tool_name=tool_name, error=validation_error
            )
            return InvocationResult.failure(
                ErrorKind.INVALID_ARGUMENTS, f"Argument validation failed: {validation_error}"
            )

        # Unknown extra arguments are tolerated but never reach the handler
        kwargs = {
            name: value
            for name, value in arguments.items()
            if descriptor.parameter(name) is not None
        }
        if descriptor.uses_context:
            kwargs[CONTEXT_PARAMETER] = context or ToolContext(tool_name)

        try:
            value = await self._call(descriptor, kwargs)

        except asyncio.CancelledError:
            logger.info(event="tool_execution_cancelled", tool_name=tool_name)
            raise

        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.error(
                event="tool_execution_error",
                tool_name=tool_name,
                error=str(e),
                error_type=type(e).__name__,
                execution_time_ms=round(execution_time, 2),
            )

            return InvocationResult.failure(
                ErrorKind.EXECUTION_FAILED, str(e) or type(e).__name__, execution_time
            )

        finally:
            if context is not None:
                context.close()

        execution_time = (time.perf_counter() - start_time) * 1000

        # Transports encode the value the same way
        try:
            text = _as_text(value)
        except (TypeError, ValueError) as e:
            logger.error(
                event="tool_result_unencodable",
                tool_name=tool_name,
                error=str(e),
                value_type=type(value).__name__,
            )
            return InvocationResult.failure(
                ErrorKind.EXECUTION_FAILED,
                f"Tool result is not JSON-serializable: {e}",
                execution_time,
            )

        logger.info(
            event="tool_executed",
            tool_name=tool_name,
            execution_time_ms=round(execution_time, 2),
            success=True,
        )

        return InvocationResult.success(value, execution_time, text)

    async def _call(self, descriptor: ToolDescriptor, kwargs: Dict[str, Any]) -> Any:
        if descriptor.is_async:
            value = await descriptor.handler(**kwargs)
        else:
            loop = asyncio.get_running_loop()
            value = await loop.run_in_executor(
                self._executor, functools.partial(descriptor.handler, **kwargs)
            )

        # Callables that hand back an awaitable without being coroutine functions
        if inspect.isawaitable(value):
            value = await value

        return value

    def validate_arguments(self, descriptor: ToolDescriptor, arguments: Dict[str, Any]) -> Optional[str]:
        """
        Validate tool arguments against the parameter schema.

        Returns:
            None if valid, error message if invalid
        """
        for param in descriptor.parameters:
            if param.required and param.name not in arguments:
                return f"Required parameter '{param.name}' is missing"

        for param_name, value in arguments.items():
            param_def = descriptor.parameter(param_name)
            if param_def is None:
                continue

            type_error = self._validate_parameter_type(param_def, value)
            if type_error:
                return f"Parameter '{param_name}': {type_error}"

        return None

    def _validate_parameter_type(self, param: ToolParameter, value: Any) -> Optional[str]:
        """
        Validate a single parameter value.

        Returns:
            None if valid, error message if invalid
        """
        if value is None:
            if param.required:
                return "is required but got null"
            return None

        if param.type == ToolParameterType.STRING:
            if not isinstance(value, str):
                return f"expected string, got {type(value).__name__}"

        elif param.type == ToolParameterType.INTEGER:
            if isinstance(value, bool) or not isinstance(value, int):
                return f"expected integer, got {type(value).__name__}"

        elif param.type == ToolParameterType.NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return f"expected number, got {type(value).__name__}"

        elif param.type == ToolParameterType.BOOLEAN:
            if not isinstance(value, bool):
                return f"expected boolean, got {type(value).__name__}"

        elif param.type == ToolParameterType.ARRAY:
            if not isinstance(value, list):
                return f"expected array, got {type(value).__name__}"

        elif param.type == ToolParameterType.OBJECT:
            if not isinstance(value, dict):
                return f"expected object, got {type(value).__name__}"

        if param.enum and value not in param.enum:
            return f"must be one of {param.enum}, got {value}"

        return None

    def shutdown(self) -> None:
        """Stop the worker pool; in-flight blocking calls are abandoned."""
        self._executor.shutdown(wait=False, cancel_futures=True)

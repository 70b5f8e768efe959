"""
Session protocol state machine.

One Session exists per accepted connection. Inbound messages are queued and
processed strictly one at a time in arrival order; everything the session
emits (responses and notification events) goes through a single outbound
queue drained by a writer task, so the transport sees messages in the order
they were produced.

States: uninitialized -> negotiating -> ready -> closed (terminal).
"""

import asyncio
import json
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, FrozenSet, Optional, Union

from pydantic import ValidationError

from common.logging import TimedLogger, get_logger
from .dispatcher import ToolContext
from .errors import ErrorKind, ProtocolViolation
from .jsonrpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    PROTOCOL_VIOLATION,
    JSONRPCHandler,
    JSONRPCNotification,
    JSONRPCRequest,
    MCPImplementation,
    MCPInitializeParams,
    MCPMethods,
    MCPSetLevelParams,
    MCPToolsCallParams,
    ServerFeatures,
    negotiate_features,
    negotiate_protocol_version,
)

if TYPE_CHECKING:
    from .server import DevToolsMCPServer

logger = get_logger(__name__)

Send = Callable[[Dict[str, Any]], Awaitable[None]]

_CLOSE = object()


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    NEGOTIATING = "negotiating"
    READY = "ready"
    CLOSED = "closed"


# Requests accepted in each state
_STATE_METHODS: Dict[SessionState, FrozenSet[str]] = {
    SessionState.UNINITIALIZED: frozenset(),
    SessionState.NEGOTIATING: frozenset({MCPMethods.INITIALIZE, MCPMethods.PING}),
    SessionState.READY: frozenset(
        {
            MCPMethods.PING,
            MCPMethods.TOOLS_LIST,
            MCPMethods.TOOLS_CALL,
            MCPMethods.LOGGING_SET_LEVEL,
            MCPMethods.SHUTDOWN,
        }
    ),
    SessionState.CLOSED: frozenset(),
}

# Requests that only run when the matching feature was negotiated
_METHOD_FEATURES = {
    MCPMethods.TOOLS_LIST: ServerFeatures.TOOLS_LIST,
    MCPMethods.TOOLS_CALL: ServerFeatures.TOOLS_CALL,
}


class Session:
    """
    One negotiated, stateful connection with a single caller.

    The transport owns the connection and drives the session through
    open(), receive() and close(); the session calls ``send`` for every
    outbound JSON-RPC message.
    """

    def __init__(
        self,
        server: "DevToolsMCPServer",
        send: Send,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.server = server
        self.state = SessionState.UNINITIALIZED
        self.negotiated_capabilities: FrozenSet[str] = frozenset()
        self.protocol_version: Optional[str] = None
        self.client_info: Optional[MCPImplementation] = None
        self.log_level = "info"

        self._send = send
        self._inbound: Optional[asyncio.Queue] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._processor: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._active_context: Optional[ToolContext] = None
        self._closing = False
        self._closed_event: Optional[asyncio.Event] = None
        self._close_task: Optional[asyncio.Task] = None

        self._handlers = {
            MCPMethods.INITIALIZE: self._handle_initialize,
            MCPMethods.PING: self._handle_ping,
            MCPMethods.TOOLS_LIST: self._handle_tools_list,
            MCPMethods.TOOLS_CALL: self._handle_tools_call,
            MCPMethods.LOGGING_SET_LEVEL: self._handle_set_level,
            MCPMethods.SHUTDOWN: self._handle_shutdown,
        }

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def supports(self, feature: str) -> bool:
        return feature in self.negotiated_capabilities

    async def open(self) -> None:
        """Connection accepted: start the processor and writer tasks."""
        if self.state != SessionState.UNINITIALIZED:
            raise ProtocolViolation("Session already opened", self.state.value)

        self._loop = asyncio.get_running_loop()
        self._inbound = asyncio.Queue()
        self._outbound = asyncio.Queue()
        self._closed_event = asyncio.Event()

        self.state = SessionState.NEGOTIATING
        self._writer = self._loop.create_task(self._write_loop())
        self._processor = self._loop.create_task(self._process_loop())

        logger.info(event="session_opened", session_id=self.session_id)

    async def receive(self, raw: Union[str, bytes, Dict[str, Any], list]) -> None:
        """Queue one inbound message (JSON text or an already decoded object)."""
        if self.state == SessionState.UNINITIALIZED:
            raise ProtocolViolation("Session has not been opened", self.state.value)

        if self.state == SessionState.CLOSED:
            logger.warning(
                event="protocol_violation",
                session_id=self.session_id,
                state=self.state.value,
                reason="message received after close",
            )
            return

        await self._inbound.put(raw)

    async def close(self, reason: str = "transport_closed", notify: bool = False) -> None:
        """
        Close the session. Idempotent.

        Cancels an in-flight call, flushes queued outbound messages and
        releases the processor and writer tasks. With ``notify`` a Ready
        session is first sent a ``shutdown`` notification.
        """
        if self._closing:
            return
        self._closing = True

        previous = self.state
        self.state = SessionState.CLOSED

        if self._active_context is not None:
            self._active_context.close()

        current = asyncio.current_task()
        close_queued = False

        try:
            if self._processor is not None and self._processor is not current:
                self._processor.cancel()
                await asyncio.wait({self._processor})

            if self._writer is not None:
                if notify and previous == SessionState.READY:
                    self._enqueue(
                        JSONRPCHandler.create_notification(
                            MCPMethods.SHUTDOWN, {"reason": reason}
                        ).model_dump()
                    )
                self._outbound.put_nowait(_CLOSE)
                close_queued = True
                if self._writer is not current:
                    await asyncio.wait({self._writer})

        finally:
            # Still release the writer and waiters when close itself is cancelled
            if self._writer is not None and not close_queued:
                self._outbound.put_nowait(_CLOSE)
            if self._closed_event is not None:
                self._closed_event.set()

        logger.info(
            event="session_closed",
            session_id=self.session_id,
            reason=reason,
            previous_state=previous.value,
        )

    async def wait_closed(self) -> None:
        if self._closed_event is None:
            raise ProtocolViolation("Session has not been opened", self.state.value)
        await self._closed_event.wait()

    def _enqueue(self, message: Dict[str, Any]) -> None:
        if self._outbound is not None:
            self._outbound.put_nowait(message)

    def _emit_notification(self, method: str, params: Dict[str, Any]) -> None:
        """Queue a notification event; dropped unless notifications were negotiated."""
        if self._closing or not self.supports(ServerFeatures.NOTIFICATIONS):
            return
        self._enqueue(JSONRPCHandler.create_notification(method, params).model_dump())

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbound.get()
            if message is _CLOSE:
                return

            try:
                await self._send(message)
            except Exception as e:
                logger.warning(
                    event="session_send_failed",
                    session_id=self.session_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._close_task = self._loop.create_task(self.close("send_failed"))
                return

    async def _process_loop(self) -> None:
        while True:
            raw = await self._inbound.get()

            with TimedLogger(
                logger, "session_message_processed", session_id=self.session_id
            ):
                try:
                    await self._process(raw)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        event="session_message_error",
                        session_id=self.session_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )

            if self.state == SessionState.CLOSED:
                return

    async def _process(self, raw: Any) -> None:
        if isinstance(raw, (str, bytes)):
            try:
                data = json.loads(raw)
            except ValueError as e:
                self._send_error(None, PARSE_ERROR, f"Parse error: {str(e)}")
                return
        else:
            data = raw

        if JSONRPCHandler.is_batch(data):
            self._send_error(None, INVALID_REQUEST, "Batch requests are not supported")
            return

        try:
            message = JSONRPCHandler.parse_message(data)
        except ValueError as e:
            request_id = data.get("id") if isinstance(data, dict) else None
            if not isinstance(request_id, (str, int)):
                request_id = None
            self._send_error(request_id, INVALID_REQUEST, f"Invalid request: {str(e)}")
            return

        if isinstance(message, JSONRPCRequest):
            await self._handle_request(message)
        elif isinstance(message, JSONRPCNotification):
            self._handle_notification(message)
        else:
            logger.debug(
                event="unexpected_response_ignored",
                session_id=self.session_id,
                id=message.id,
            )

    async def _handle_request(self, request: JSONRPCRequest) -> None:
        logger.debug(
            event="jsonrpc_request",
            session_id=self.session_id,
            method=request.method,
            id=request.id,
        )

        handler = self._handlers.get(request.method)
        if handler is None:
            self._send_error(request.id, METHOD_NOT_FOUND, f"Method '{request.method}' not found")
            return

        try:
            self._check_state(request.method)
            result = await handler(request)

        except ProtocolViolation as e:
            logger.warning(
                event="protocol_violation",
                session_id=self.session_id,
                method=request.method,
                state=e.state,
                reason=str(e),
            )
            self._send_error(
                request.id,
                PROTOCOL_VIOLATION,
                str(e),
                {"errorKind": ErrorKind.PROTOCOL_VIOLATION.value, "state": e.state},
            )
            return

        except ValidationError as e:
            self._send_error(
                request.id, INVALID_PARAMS, f"Invalid params for '{request.method}': {str(e)}"
            )
            return

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.error(
                event="request_handler_error",
                session_id=self.session_id,
                method=request.method,
                error=str(e),
            )
            self._send_error(request.id, INTERNAL_ERROR, f"Internal error: {str(e)}")
            return

        self._enqueue(JSONRPCHandler.create_response(request.id, result).model_dump())

        if request.method == MCPMethods.SHUTDOWN:
            await self.close("shutdown_requested")

    def _check_state(self, method: str) -> None:
        if method not in _STATE_METHODS[self.state]:
            raise ProtocolViolation(
                f"Method '{method}' is not allowed in state '{self.state.value}'",
                self.state.value,
            )

        feature = _METHOD_FEATURES.get(method)
        if feature is not None and not self.supports(feature):
            raise ProtocolViolation(
                f"Feature '{feature}' was not negotiated for this session", self.state.value
            )

    def _send_error(
        self, request_id: Union[str, int, None], code: int, message: str, data: Any = None
    ) -> None:
        self._enqueue(
            JSONRPCHandler.create_error_response(request_id, code, message, data).model_dump()
        )

    def _handle_notification(self, notification: JSONRPCNotification) -> None:
        if notification.method == MCPMethods.INITIALIZED:
            logger.info(event="client_ready", session_id=self.session_id)
        elif notification.method == MCPMethods.CANCEL:
            # Calls are only cancelled by closing the session
            logger.info(
                event="request_cancel_ignored",
                session_id=self.session_id,
                request_id=(notification.params or {}).get("requestId"),
            )
        else:
            logger.warning(
                event="unknown_notification",
                session_id=self.session_id,
                method=notification.method,
            )

    async def _handle_initialize(self, request: JSONRPCRequest) -> Dict[str, Any]:
        """Negotiate features and protocol version, then move to ready."""
        params = MCPInitializeParams.model_validate(request.params or {})

        self.negotiated_capabilities = negotiate_features(params.features)
        self.protocol_version = negotiate_protocol_version(params.protocolVersion)
        self.client_info = params.clientInfo
        self.state = SessionState.READY

        logger.info(
            event="session_ready",
            session_id=self.session_id,
            client_info=params.clientInfo.model_dump() if params.clientInfo else None,
            requested_version=params.protocolVersion,
            protocol_version=self.protocol_version,
            features=sorted(self.negotiated_capabilities),
        )

        result = self.server.initialize_result(self.protocol_version, self.negotiated_capabilities)
        return result.model_dump(exclude_none=True)

    async def _handle_ping(self, request: JSONRPCRequest) -> Dict[str, Any]:
        return {}

    async def _handle_tools_list(self, request: JSONRPCRequest) -> Dict[str, Any]:
        return {"tools": self.server.registry.to_wire()}

    async def _handle_tools_call(self, request: JSONRPCRequest) -> Dict[str, Any]:
        params = MCPToolsCallParams.model_validate(request.params or {})
        progress_token = (params.meta or {}).get("progressToken", request.id)

        context = ToolContext(
            params.name,
            emit=self._emit_notification,
            loop=self._loop,
            progress_token=progress_token,
            min_level=self.log_level,
        )
        self._active_context = context

        try:
            result = await self.server.dispatcher.invoke(params.name, params.arguments, context)
        finally:
            self._active_context = None

        if not result.ok:
            logger.info(
                event="tool_call_failed",
                session_id=self.session_id,
                tool_name=params.name,
                error_kind=result.error_kind.value if result.error_kind else None,
            )

        return result.to_wire()

    async def _handle_set_level(self, request: JSONRPCRequest) -> Dict[str, Any]:
        params = MCPSetLevelParams.model_validate(request.params or {})
        self.log_level = params.level
        logger.info(
            event="session_log_level_set", session_id=self.session_id, level=params.level
        )
        return {}

    async def _handle_shutdown(self, request: JSONRPCRequest) -> Dict[str, Any]:
        return {}

"""
WebSocket gateway using FastAPI.

Binds the devtools MCP server to HTTP: a WebSocket transport at
``{path}/ws``, the SSE transport from gateway.sse, and ``/health``.
Each accepted connection gets its own session and task.
"""

import asyncio
import json
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from common.config import Config
from common.logging import get_logger
from devtools_mcp.server import DevToolsMCPServer
from devtools_mcp.session import Session
from gateway.connection_manager import ConnectionManager
from gateway.sse import create_sse_router

logger = get_logger(__name__)


class MCPGateway:
    """FastAPI application serving devtools MCP sessions."""

    def __init__(
        self,
        config: Config,
        mcp_server: DevToolsMCPServer,
        connection_manager: Optional[ConnectionManager] = None,
    ):
        self.config = config
        self.mcp_server = mcp_server
        self.connection_manager = connection_manager or ConnectionManager()
        self.path = "/" + config.server.path.strip("/")
        self.app = FastAPI(title=config.server.name, version=config.server.version)

        self._setup_routes()

    def _setup_routes(self) -> None:
        """Setup FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                return JSONResponse(
                    self.mcp_server.health_check(
                        active_sessions=self.connection_manager.get_connection_count()
                    )
                )
            except Exception as e:
                logger.error(event="health_check_failed", error=str(e))
                return JSONResponse({"status": "error", "error": str(e)}, status_code=503)

        @self.app.websocket(f"{self.path}/ws")
        async def websocket_endpoint(websocket: WebSocket):
            """One session per WebSocket connection."""
            await self._handle_websocket_connection(websocket)

        self.app.include_router(
            create_sse_router(self.mcp_server, self.connection_manager, self.path)
        )

    async def _handle_websocket_connection(self, websocket: WebSocket) -> None:
        """Run a session until either side closes it."""
        await websocket.accept()

        async def send(message):
            await websocket.send_text(json.dumps(message, default=str))

        session = self.mcp_server.new_session(send)
        await session.open()
        self.connection_manager.connect(session, "websocket")

        receiver = asyncio.ensure_future(self._message_loop(websocket, session))
        closed = asyncio.ensure_future(session.wait_closed())

        try:
            done, _ = await asyncio.wait({receiver, closed}, return_when=asyncio.FIRST_COMPLETED)

            if receiver in done and receiver.exception() is not None:
                error = receiver.exception()
                logger.error(
                    event="connection_error",
                    session_id=session.session_id,
                    error=str(error),
                    error_type=type(error).__name__,
                )

        finally:
            receiver.cancel()
            closed.cancel()
            server_closed = session.is_closed
            self.connection_manager.disconnect(session.session_id)
            await session.close("transport_closed")

        # Session ended from our side: shutdown request or server stop
        if server_closed:
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug(
                    event="websocket_close_skipped", session_id=session.session_id, error=str(e)
                )

    async def _message_loop(self, websocket: WebSocket, session: Session) -> None:
        """Feed every text frame to the session."""
        while True:
            try:
                message_data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(event="client_disconnect", session_id=session.session_id)
                return

            await session.receive(message_data)


def create_gateway_app(
    config: Config,
    mcp_server: DevToolsMCPServer,
    connection_manager: Optional[ConnectionManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI gateway application."""
    gateway = MCPGateway(config, mcp_server, connection_manager)
    return gateway.app

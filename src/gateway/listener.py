"""
Listener: binds the configured port and serves the gateway app.

Building a Listener is pure. ``start()`` binds the socket up front (so a
port conflict surfaces as ListenerError in the caller's thread), runs
uvicorn on its own event loop in a daemon thread and returns a handle
whose ``stop()`` notifies and closes live sessions, stops uvicorn and
releases the port.
"""

import asyncio
import socket
import threading
import time
from typing import Optional

import uvicorn

from common.config import Config
from common.logging import get_logger
from devtools_mcp.errors import ListenerError
from devtools_mcp.server import DevToolsMCPServer
from gateway.connection_manager import ConnectionManager
from gateway.websocket import create_gateway_app

logger = get_logger(__name__)

STOP_TIMEOUT = 10.0


def _bind_socket(host: str, port: int) -> socket.socket:
    """Bind and listen, raising ListenerError when the port is unavailable."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError as e:
        sock.close()
        logger.error(event="listener_bind_failed", host=host, port=port, error=str(e))
        raise ListenerError(f"Cannot listen on {host}:{port}: {e}") from e

    return sock


class Listener:
    """Gateway app plus the server core it serves; not yet bound."""

    def __init__(self, config: Config, mcp_server: DevToolsMCPServer):
        self.config = config
        self.mcp_server = mcp_server
        self.connection_manager = ConnectionManager()
        self.app = create_gateway_app(config, mcp_server, self.connection_manager)
        self._started = False

    @property
    def registry(self):
        return self.mcp_server.registry

    def start(self, port: Optional[int] = None, host: Optional[str] = None) -> "ListenerHandle":
        """
        Bind the port and begin accepting connections.

        Args:
            port: Overrides config.server.port; 0 picks a free port
            host: Overrides config.server.host

        Raises:
            ListenerError: Port unavailable or the HTTP server failed to start
        """
        if self._started:
            raise ListenerError("Listener has already been started")
        self._started = True

        host = host or self.config.server.host
        port = self.config.server.port if port is None else port

        sock = _bind_socket(host, port)

        try:
            handle = ListenerHandle(self, sock, host)
            handle._start(self.config.server.startup_timeout)
        except Exception:
            sock.close()
            raise

        return handle


class ListenerHandle:
    """A running listener. Use ``stop()`` or a ``with`` block to release it."""

    def __init__(self, listener: Listener, sock: socket.socket, host: str):
        self.listener = listener
        self.host = host
        self.port: int = sock.getsockname()[1]

        self._socket = sock
        self._server = uvicorn.Server(
            uvicorn.Config(
                listener.app,
                log_config=None,  # Use our custom logging setup
                access_log=False,
                lifespan="off",
            )
        )
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._error: Optional[BaseException] = None
        self._stopped = False
        self._thread = threading.Thread(
            target=self._run, name=f"devtools-mcp-{self.port}", daemon=True
        )

    @property
    def path(self) -> str:
        return "/" + self.listener.config.server.path.strip("/")

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}{self.path}/ws"

    @property
    def running(self) -> bool:
        return self._server.started and self._thread.is_alive() and not self._stopped

    def _run(self) -> None:
        try:
            asyncio.run(self._serve())
        except (Exception, SystemExit) as e:
            self._error = e
            logger.error(event="listener_crashed", port=self.port, error=str(e))

    async def _serve(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self._server.serve(sockets=[self._socket])

    def _start(self, timeout: float) -> None:
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive():
                raise ListenerError(f"HTTP server exited during startup: {self._error}")
            if time.monotonic() > deadline:
                self.stop()
                raise ListenerError(f"HTTP server did not start within {timeout}s")
            time.sleep(0.01)

        logger.info(
            event="listener_started",
            host=self.host,
            port=self.port,
            path=self.path,
            tools_count=len(self.listener.registry),
        )

    def stop(self, timeout: float = STOP_TIMEOUT) -> None:
        """Close sessions, stop serving and release the port. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        if self._loop is not None and self._thread.is_alive():
            future = asyncio.run_coroutine_threadsafe(
                self.listener.connection_manager.close_all("server_stopped"), self._loop
            )
            try:
                closed = future.result(timeout)
                logger.info(event="sessions_closed", count=closed)
            except Exception as e:
                logger.warning(
                    event="session_close_failed", error=str(e), error_type=type(e).__name__
                )

        self._server.should_exit = True
        if self._thread.is_alive():
            self._thread.join(timeout)

        self._socket.close()
        self.listener.mcp_server.shutdown()

        logger.info(event="listener_stopped", host=self.host, port=self.port)

    def wait(self) -> None:
        """Block until the server thread exits."""
        while self._thread.is_alive():
            self._thread.join(0.5)

    def __enter__(self) -> "ListenerHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

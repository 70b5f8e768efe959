"""
Server-Sent-Events transport.

A GET on ``{path}/sse`` opens a session and streams its outbound messages.
The first event, ``endpoint``, names the URL the caller POSTs its messages
to; every later ``message`` event carries one JSON-RPC message.
"""

import asyncio
import json

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from common.logging import get_logger
from devtools_mcp.server import DevToolsMCPServer
from gateway.connection_manager import ConnectionManager

logger = get_logger(__name__)

_END_OF_STREAM = object()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable proxy buffering
}


def create_sse_router(
    mcp_server: DevToolsMCPServer, connection_manager: ConnectionManager, path: str
) -> APIRouter:
    """Routes for the SSE stream and its companion POST endpoint."""
    router = APIRouter(prefix=path, tags=["MCP SSE"])

    @router.get("/sse")
    async def sse_endpoint(request: Request):
        queue: asyncio.Queue = asyncio.Queue()

        async def send(message):
            await queue.put(message)

        session = mcp_server.new_session(send)
        await session.open()
        connection_manager.connect(session, "sse")

        async def end_when_closed():
            await session.wait_closed()
            await queue.put(_END_OF_STREAM)

        watcher = asyncio.ensure_future(end_when_closed())
        endpoint = f"{path}/message?sessionId={session.session_id}"

        async def event_stream():
            try:
                yield {"event": "endpoint", "data": endpoint}

                while True:
                    message = await queue.get()
                    if message is _END_OF_STREAM:
                        break
                    yield {"event": "message", "data": json.dumps(message, default=str)}

            finally:
                watcher.cancel()
                connection_manager.disconnect(session.session_id)
                # The stream is cancelled on client disconnect; the close must still finish
                await asyncio.shield(session.close("transport_closed"))

        logger.info(event="sse_stream_started", session_id=session.session_id, endpoint=endpoint)

        return EventSourceResponse(event_stream(), headers=SSE_HEADERS)

    @router.post("/message")
    async def post_message(request: Request, session_id: str = Query(..., alias="sessionId")):
        session = connection_manager.get(session_id)
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Session not found: {session_id}"
            )

        body = await request.body()
        await session.receive(body.decode("utf-8", errors="replace"))

        return JSONResponse({"status": "accepted"}, status_code=status.HTTP_202_ACCEPTED)

    return router

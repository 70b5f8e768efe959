"""
Session connection management.

Tracks the live sessions of every transport so the listener can notify and
close them when the server stops, and so SSE POSTs can find their session.
"""

import asyncio
from typing import Dict, List, Optional

from common.logging import get_logger
from devtools_mcp.session import Session

logger = get_logger(__name__)


class ConnectionManager:
    """Live sessions keyed by session id."""

    def __init__(self):
        self.active_sessions: Dict[str, Session] = {}
        self.transports: Dict[str, str] = {}  # session_id -> transport name

    def connect(self, session: Session, transport: str) -> None:
        """Register an opened session."""
        self.active_sessions[session.session_id] = session
        self.transports[session.session_id] = transport

        logger.info(
            event="connection_established",
            session_id=session.session_id,
            transport=transport,
            total_connections=len(self.active_sessions),
        )

    def disconnect(self, session_id: str) -> None:
        """Forget a session; unknown ids are ignored."""
        self.active_sessions.pop(session_id, None)
        transport = self.transports.pop(session_id, None)

        logger.info(
            event="connection_closed",
            session_id=session_id,
            transport=transport,
            total_connections=len(self.active_sessions),
        )

    def get(self, session_id: str) -> Optional[Session]:
        session = self.active_sessions.get(session_id)
        if session is None or session.is_closed:
            return None
        return session

    def sessions(self) -> List[Session]:
        return list(self.active_sessions.values())

    async def close_all(self, reason: str = "server_stopped") -> int:
        """
        Notify and close every live session.

        Returns:
            Number of sessions that were closed
        """
        sessions = [session for session in self.sessions() if not session.is_closed]
        if not sessions:
            return 0

        results = await asyncio.gather(
            *(session.close(reason, notify=True) for session in sessions),
            return_exceptions=True,
        )

        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error(
                    event="session_close_failed",
                    session_id=session.session_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )

        return len(sessions)

    def get_connection_count(self) -> int:
        """Get the total number of live sessions."""
        return len(self.active_sessions)

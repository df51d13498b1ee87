"""
Relay Session Registry

Tracks server-side relay sessions by id. One registry is owned by the
application and handed to routes as a dependency.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog

from .dispatch import TranscriptLog

logger = structlog.get_logger()


@dataclass
class RelaySession:
    """One client websocket relayed to an upstream realtime connection."""

    session_id: str
    user_id: str
    document_id: str
    transcript: TranscriptLog = field(default_factory=TranscriptLog)
    upstream: Any = field(default=None, repr=False)
    upstream_ready: bool = False
    connected_at: datetime = field(default_factory=datetime.utcnow)

    def __hash__(self) -> int:
        return hash(self.session_id)


class SessionRegistry:
    """Active relay sessions. Safe for concurrent use from one event loop."""

    def __init__(self) -> None:
        self._sessions: dict[str, RelaySession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, user_id: str, document_id: str) -> RelaySession:
        session = RelaySession(
            session_id=f"session_{uuid4().hex}",
            user_id=user_id,
            document_id=document_id,
        )
        async with self._lock:
            self._sessions[session.session_id] = session

        logger.info(
            "Relay session created",
            session_id=session.session_id,
            user_id=user_id,
            document_id=document_id,
        )
        return session

    async def get(self, session_id: str) -> RelaySession | None:
        return self._sessions.get(session_id)

    async def delete(self, session_id: str) -> RelaySession | None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)

        if session is not None:
            duration = (datetime.utcnow() - session.connected_at).total_seconds()
            logger.info(
                "Relay session removed",
                session_id=session_id,
                duration_seconds=round(duration, 1),
                transcript_lines=len(session.transcript),
            )
        return session

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "upstream_connected": sum(1 for s in self._sessions.values() if s.upstream_ready),
            "users_connected": len({s.user_id for s in self._sessions.values()}),
        }


__all__ = ["RelaySession", "SessionRegistry"]

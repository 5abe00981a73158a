"""
In-memory registry of live SSE connections.

Maps a connection id to the channel feeding client messages into the MCP
server and to the internal user id resolved when the connection opened.
Entries live until the connection closes; nothing is persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional


@dataclass
class SseSession:
    session_id: str
    channel: Any  # anyio send stream for SessionMessage objects
    user_id: Optional[str]
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SessionRegistry:
    """Connection id -> SseSession. Lookups never raise."""

    def __init__(self):
        self._sessions: Dict[str, SseSession] = {}

    def register(self, session_id: str, channel: Any, user_id: Optional[str]) -> SseSession:
        session = SseSession(session_id=session_id, channel=channel, user_id=user_id)
        self._sessions[session_id] = session
        return session

    def get(self, session_id: Optional[str]) -> Optional[SseSession]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def user_id_for(self, session_id: Optional[str]) -> Optional[str]:
        session = self.get(session_id)
        return session.user_id if session else None

    def remove(self, session_id: str) -> Optional[SseSession]:
        return self._sessions.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

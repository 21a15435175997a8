"""In-process registry of open chat sessions."""
from __future__ import annotations

import logging

from chat_sync.services.chat_session import ChatSession

logger = logging.getLogger(__name__)


class SessionManager:
    """Tracks open sessions per connection and conversation.

    A connection holds at most one session per conversation.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, ChatSession]] = {}

    def get(self, connection_key: str, conversation_id: str) -> ChatSession | None:
        return self._sessions.get(connection_key, {}).get(conversation_id)

    async def open(self, connection_key: str, session: ChatSession) -> ChatSession:
        existing = self.get(connection_key, session.conversation_id)
        if existing is not None:
            return existing
        await session.open()
        self._sessions.setdefault(connection_key, {})[session.conversation_id] = session
        logger.debug(
            "Session registered: %s/%s (connections=%d)",
            connection_key, session.conversation_id, len(self._sessions),
        )
        return session

    async def close(self, connection_key: str, conversation_id: str) -> None:
        sessions = self._sessions.get(connection_key)
        if not sessions:
            return
        session = sessions.pop(conversation_id, None)
        if not sessions:
            del self._sessions[connection_key]
        if session is not None:
            await session.close()

    async def close_connection(self, connection_key: str) -> None:
        sessions = self._sessions.pop(connection_key, {})
        for session in sessions.values():
            try:
                await session.close()
            except Exception:
                logger.exception(
                    "Failed to close session %s/%s", connection_key, session.conversation_id,
                )

    async def close_all(self) -> None:
        for connection_key in list(self._sessions):
            await self.close_connection(connection_key)

    def __len__(self) -> int:
        return sum(len(s) for s in self._sessions.values())

from __future__ import annotations

from typing import Any, Protocol


class MessagePersistence(Protocol):
    async def append(self, conversation_id: str, record: dict[str, Any]) -> str:
        """Persist a message record. Return the store-assigned id.

        Raises PersistenceError on failure.
        """
        ...

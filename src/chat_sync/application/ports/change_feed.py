from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Protocol

from chat_sync.application.dto.events import ChangeEvent

OnChangeCallback = Callable[[ChangeEvent], Coroutine[Any, Any, None]]


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    subscription_id: str
    conversation_id: str


class ChangeFeedAdapter(Protocol):
    async def subscribe(
        self,
        conversation_id: str,
        on_change: OnChangeCallback,
    ) -> SubscriptionHandle:
        """Start delivering events for a conversation, in feed order."""
        ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop delivery. No callback fires for the handle afterwards."""
        ...

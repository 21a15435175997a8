"""Canonical message list for one open conversation."""
from __future__ import annotations

import bisect
import logging
from datetime import datetime
from operator import attrgetter

from chat_sync.application.dto.reconciliation import InsertOutcome, RenderSnapshot
from chat_sync.domain.entities.message import ImageContent, Message, Sender
from chat_sync.domain.value_objects.enums import InsertStatus

logger = logging.getLogger(__name__)

_created = attrgetter("created")


class MessageReconciler:
    """Ordered, deduplicated message list.

    Messages are kept sorted by ``created``; messages sharing a timestamp stay
    in arrival order. Not thread-safe: callers serialize access.
    """

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._messages: list[Message] = []
        self._keys: set[tuple[Sender, datetime]] = set()

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def insert(self, message: Message) -> InsertOutcome:
        if message.key in self._keys:
            logger.debug(
                "Duplicate message from %s at %s ignored",
                message.sender.sender_id, message.created.isoformat(),
            )
            return InsertOutcome.duplicate()

        # Insert after any equal timestamps: same result as append + stable sort.
        position = bisect.bisect_right(self._messages, message.created, key=_created)
        self._messages.insert(position, message)
        self._keys.add(message.key)

        return InsertOutcome(
            status=InsertStatus.INSERTED,
            position=position,
            is_now_last=position == len(self._messages) - 1,
        )

    def attach_resolved_image(self, message_id: str, image: bytes) -> bool:
        """Attach a downloaded image in place. Returns False if nothing changed."""
        for position, message in enumerate(self._messages):
            if message.id != message_id:
                continue
            if not isinstance(message.kind, ImageContent):
                logger.debug("Message %s is not an image, nothing to attach", message_id)
                return False
            self._messages[position] = message.with_image(image)
            return True

        logger.debug("Message %s not present, image dropped", message_id)
        return False

    def contains(self, key: tuple[Sender, datetime]) -> bool:
        return key in self._keys

    def should_auto_scroll(self, outcome: InsertOutcome, viewport_at_bottom: bool) -> bool:
        """Scroll only for a fresh insert that landed at the bottom of the list."""
        return viewport_at_bottom and outcome.inserted and outcome.is_now_last

    def position_of(self, message_id: str) -> int | None:
        for position, message in enumerate(self._messages):
            if message.id == message_id:
                return position
        return None

    def snapshot(
        self,
        *,
        should_scroll: bool = False,
        changed_position: int | None = None,
    ) -> RenderSnapshot:
        return RenderSnapshot(
            conversation_id=self.conversation_id,
            messages=self.messages,
            should_scroll=should_scroll,
            changed_position=changed_position,
        )

    def clear(self) -> None:
        self._messages.clear()
        self._keys.clear()

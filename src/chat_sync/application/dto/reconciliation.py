from __future__ import annotations

from dataclasses import dataclass

from chat_sync.domain.entities.message import Message
from chat_sync.domain.value_objects.enums import InsertStatus


@dataclass(frozen=True, slots=True)
class InsertOutcome:
    status: InsertStatus
    position: int | None = None
    is_now_last: bool = False

    @classmethod
    def duplicate(cls) -> InsertOutcome:
        return cls(status=InsertStatus.DUPLICATE)

    @property
    def inserted(self) -> bool:
        return self.status == InsertStatus.INSERTED


@dataclass(frozen=True, slots=True)
class RenderSnapshot:
    """Render-ready view of the canonical list after a change."""

    conversation_id: str
    messages: tuple[Message, ...]
    should_scroll: bool = False
    changed_position: int | None = None

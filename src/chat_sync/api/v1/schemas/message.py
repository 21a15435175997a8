from __future__ import annotations

import base64
from datetime import datetime

from pydantic import BaseModel

from chat_sync.application.dto.reconciliation import RenderSnapshot
from chat_sync.domain.entities.message import ImageContent, Message, TextContent
from chat_sync.domain.value_objects.enums import MessageKindType


class MessageView(BaseModel):
    id: str | None
    sender_id: str
    display_name: str
    created: datetime
    kind: MessageKindType
    content: str | None = None
    image_ref: str | None = None
    image_ready: bool = False
    # base64 of the resolved JPEG
    image: str | None = None

    @classmethod
    def from_entity(cls, message: Message) -> MessageView:
        content = message.kind.text if isinstance(message.kind, TextContent) else None
        image = message.kind if isinstance(message.kind, ImageContent) else None
        preview = image.local_preview if image else None
        return cls(
            id=message.id,
            sender_id=message.sender.sender_id,
            display_name=message.sender.display_name,
            created=message.created,
            kind=message.kind.type,
            content=content,
            image_ref=image.remote_ref if image else None,
            image_ready=bool(image and image.is_resolved),
            image=base64.b64encode(preview).decode("ascii") if preview else None,
        )


class SnapshotView(BaseModel):
    conversation_id: str
    messages: list[MessageView]
    should_scroll: bool
    changed_position: int | None = None

    @classmethod
    def from_snapshot(cls, snapshot: RenderSnapshot) -> SnapshotView:
        return cls(
            conversation_id=snapshot.conversation_id,
            messages=[MessageView.from_entity(m) for m in snapshot.messages],
            should_scroll=snapshot.should_scroll,
            changed_position=snapshot.changed_position,
        )

"""Message <-> store record mapping.

Record shape: ``{senderId, displayName, created, content?, imageRef?}`` with
``created`` in epoch seconds and exactly one of ``content``/``imageRef``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from chat_sync.application.exceptions import MalformedRecordError, ValidationError
from chat_sync.domain.entities.message import ImageContent, Message, Sender, TextContent


class MessageRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sender_id: str = Field(alias="senderId", min_length=1)
    display_name: str = Field(alias="displayName")
    created: float
    content: str | None = None
    image_ref: str | None = Field(default=None, alias="imageRef", min_length=1)

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> MessageRecord:
        if (self.content is None) == (self.image_ref is None):
            raise ValueError("exactly one of content/imageRef must be set")
        return self


def record_to_entity(record: Mapping[str, Any], document_id: str | None = None) -> Message:
    try:
        parsed = MessageRecord.model_validate(dict(record))
        created = datetime.fromtimestamp(parsed.created, tz=timezone.utc)
    except pydantic.ValidationError as exc:
        raise MalformedRecordError(str(exc)) from exc
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedRecordError(f"Invalid created timestamp: {exc}") from exc

    if parsed.content is not None:
        kind: TextContent | ImageContent = TextContent(parsed.content)
    else:
        kind = ImageContent(remote_ref=parsed.image_ref)

    return Message(
        sender=Sender(parsed.sender_id, parsed.display_name),
        created=created,
        kind=kind,
        id=document_id,
    )


def entity_to_record(message: Message) -> dict[str, Any]:
    if isinstance(message.kind, TextContent):
        content, image_ref = message.kind.text, None
    else:
        if message.kind.remote_ref is None:
            raise ValidationError("Image message has no remote reference to persist")
        content, image_ref = None, message.kind.remote_ref

    record = MessageRecord(
        sender_id=message.sender.sender_id,
        display_name=message.sender.display_name,
        created=message.created.timestamp(),
        content=content,
        image_ref=image_ref,
    )
    return record.model_dump(by_alias=True, exclude_none=True)

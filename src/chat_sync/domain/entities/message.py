from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime

from chat_sync.domain.value_objects.enums import MessageKindType


@dataclass(frozen=True, slots=True)
class Sender:
    sender_id: str
    display_name: str


@dataclass(frozen=True, slots=True)
class TextContent:
    text: str

    @property
    def type(self) -> MessageKindType:
        return MessageKindType.TEXT


@dataclass(frozen=True, slots=True)
class ImageContent:
    remote_ref: str | None = None
    local_preview: bytes | None = field(default=None, repr=False)

    @property
    def type(self) -> MessageKindType:
        return MessageKindType.IMAGE

    @property
    def is_resolved(self) -> bool:
        return self.local_preview is not None


MessageKind = TextContent | ImageContent


@dataclass(frozen=True, slots=True, eq=False)
class Message:
    """One chat message.

    Identity is (sender, created): content and the store-assigned id are not
    part of equality, so the same message seen twice through the change feed
    collapses into one entry.
    """

    sender: Sender
    created: datetime
    kind: MessageKind
    id: str | None = None

    @property
    def key(self) -> tuple[Sender, datetime]:
        return self.sender, self.created

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    @property
    def is_image(self) -> bool:
        return isinstance(self.kind, ImageContent)

    @property
    def needs_download(self) -> bool:
        """Image known only by its remote reference."""
        return (
            isinstance(self.kind, ImageContent)
            and self.kind.local_preview is None
            and self.kind.remote_ref is not None
        )

    @property
    def is_renderable(self) -> bool:
        if isinstance(self.kind, TextContent):
            return True
        return self.kind.local_preview is not None or self.kind.remote_ref is not None

    def with_image(self, image: bytes) -> Message:
        if not isinstance(self.kind, ImageContent):
            raise TypeError("Cannot attach an image to a text message")
        return replace(self, kind=replace(self.kind, local_preview=image))

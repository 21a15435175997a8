"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import io
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from PIL import Image

from chat_sync.application.dto.events import ChangeEvent
from chat_sync.application.dto.reconciliation import RenderSnapshot
from chat_sync.application.exceptions import DownloadError, PersistenceError, UploadError
from chat_sync.application.ports.change_feed import OnChangeCallback, SubscriptionHandle
from chat_sync.domain.entities.message import ImageContent, Message, Sender, TextContent
from chat_sync.domain.value_objects.enums import ChangeKind
from chat_sync.services.chat_session import ChatSession, SessionConfig

CONVERSATION_ID = "conv-1"
ALICE = Sender("alice", "Alice")
BOB = Sender("bob", "Bob")


def ts(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def make_message(
    *,
    sender: Sender = ALICE,
    created: float = 100,
    text: str = "hello",
    message_id: str | None = None,
) -> Message:
    return Message(sender=sender, created=ts(created), kind=TextContent(text), id=message_id)


def make_image_message(
    *,
    sender: Sender = ALICE,
    created: float = 100,
    ref: str | None = "ref-1",
    preview: bytes | None = None,
    message_id: str | None = None,
) -> Message:
    return Message(
        sender=sender,
        created=ts(created),
        kind=ImageContent(remote_ref=ref, local_preview=preview),
        id=message_id,
    )


def make_record(
    *,
    sender: Sender = ALICE,
    created: float = 100,
    content: str | None = "hello",
    image_ref: str | None = None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "senderId": sender.sender_id,
        "displayName": sender.display_name,
        "created": created,
    }
    if content is not None:
        record["content"] = content
    if image_ref is not None:
        record["imageRef"] = image_ref
    return record


def added(record: dict[str, Any], document_id: str) -> ChangeEvent:
    return ChangeEvent(kind=ChangeKind.ADDED, record=record, document_id=document_id)


def make_png(width: int = 8, height: int = 8, mode: str = "RGB") -> bytes:
    color: Any = (200, 30, 30, 255) if mode == "RGBA" else (200, 30, 30)
    out = io.BytesIO()
    Image.new(mode, (width, height), color).save(out, format="PNG")
    return out.getvalue()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@dataclass
class FakeChangeFeed:
    backlog: dict[str, list[ChangeEvent]] = field(default_factory=dict)
    unsubscribed: list[str] = field(default_factory=list)
    _subscribers: dict[str, tuple[str, OnChangeCallback]] = field(default_factory=dict)

    async def subscribe(self, conversation_id: str, on_change: OnChangeCallback) -> SubscriptionHandle:
        handle = SubscriptionHandle(subscription_id=uuid.uuid4().hex, conversation_id=conversation_id)
        self._subscribers[handle.subscription_id] = (conversation_id, on_change)
        for event in self.backlog.get(conversation_id, []):
            await on_change(event)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        self._subscribers.pop(handle.subscription_id, None)
        self.unsubscribed.append(handle.subscription_id)

    async def emit(self, conversation_id: str, event: ChangeEvent) -> None:
        self.backlog.setdefault(conversation_id, []).append(event)
        for conv, callback in list(self._subscribers.values()):
            if conv == conversation_id:
                await callback(event)

    def subscriber_count(self, conversation_id: str) -> int:
        return sum(1 for conv, _ in self._subscribers.values() if conv == conversation_id)


@dataclass
class FakeMessageStore:
    """Append-only store; echoes appends through the feed when one is attached."""
    feed: FakeChangeFeed | None = None
    appended: list[tuple[str, dict[str, Any], str]] = field(default_factory=list)
    fail: bool = False

    async def append(self, conversation_id: str, record: dict[str, Any]) -> str:
        if self.fail:
            raise PersistenceError("store unavailable")
        document_id = f"doc-{len(self.appended) + 1}"
        self.appended.append((conversation_id, record, document_id))
        if self.feed is not None:
            await self.feed.emit(conversation_id, added(dict(record), document_id))
        return document_id


@dataclass
class FakeAttachmentService:
    blobs: dict[str, bytes] = field(default_factory=dict)
    uploads: list[tuple[str, bytes]] = field(default_factory=list)
    downloads: list[str] = field(default_factory=list)
    fail_upload: bool = False
    fail_download: bool = False
    upload_gate: asyncio.Event | None = None
    download_gate: asyncio.Event | None = None

    async def upload(self, conversation_id: str, data: bytes) -> str:
        if self.upload_gate is not None:
            await self.upload_gate.wait()
        if self.fail_upload:
            raise UploadError("storage unavailable")
        ref = f"ref-{len(self.uploads) + 1}"
        self.uploads.append((conversation_id, data))
        self.blobs[ref] = data
        return ref

    async def download(self, ref: str, max_bytes: int) -> bytes:
        self.downloads.append(ref)
        if self.download_gate is not None:
            await self.download_gate.wait()
        if self.fail_download:
            raise DownloadError("storage unavailable")
        data = self.blobs.get(ref)
        if data is None:
            raise DownloadError(f"{ref} not found")
        if len(data) > max_bytes:
            raise DownloadError(f"{ref} exceeds {max_bytes} bytes")
        return data


@dataclass
class FixedClock:
    current: datetime = field(default_factory=lambda: ts(1_000))
    step: timedelta = timedelta(seconds=1)

    def now(self) -> datetime:
        value = self.current
        self.current += self.step
        return value


@dataclass
class RenderRecorder:
    snapshots: list[RenderSnapshot] = field(default_factory=list)

    async def __call__(self, snapshot: RenderSnapshot) -> None:
        self.snapshots.append(snapshot)

    @property
    def last(self) -> RenderSnapshot:
        return self.snapshots[-1]


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()


@pytest.fixture
def store(feed: FakeChangeFeed) -> FakeMessageStore:
    return FakeMessageStore(feed=feed)


@pytest.fixture
def attachments() -> FakeAttachmentService:
    return FakeAttachmentService()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def recorder() -> RenderRecorder:
    return RenderRecorder()


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(conversation_id=CONVERSATION_ID, sender=ALICE)


@pytest.fixture
def session(session_config, feed, store, attachments, clock, recorder) -> ChatSession:
    return ChatSession(
        session_config, feed, store, attachments, on_render=recorder, clock=clock,
    )

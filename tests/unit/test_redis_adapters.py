from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import pytest
import redis.asyncio as aioredis

from chat_sync.application.dto.events import ChangeEvent
from chat_sync.application.exceptions import DownloadError, PersistenceError, UploadError
from chat_sync.domain.value_objects.enums import ChangeKind
from chat_sync.infrastructure.bus.redis_streams import (
    RedisStreamChangeFeed,
    RedisStreamMessageStore,
    stream_key,
)
from chat_sync.infrastructure.storage.redis_attachments import REF_SCHEME, RedisAttachmentStore
from tests.conftest import make_record, wait_until


def _seq(entry_id: str) -> int:
    return int(entry_id.split("-")[0])


@dataclass
class FakeRedis:
    """Just enough of the redis.asyncio client for the adapters."""
    streams: dict[str, list[tuple[str, dict[str, Any]]]] = field(default_factory=dict)
    values: dict[str, bytes] = field(default_factory=dict)
    broken: bool = False
    _counter: int = 0

    def _check(self) -> None:
        if self.broken:
            raise aioredis.ConnectionError("connection refused")

    async def xadd(self, stream: str, fields: dict[str, Any]) -> str:
        self._check()
        self._counter += 1
        entry_id = f"{self._counter}-0"
        self.streams.setdefault(stream, []).append((entry_id, fields))
        return entry_id

    async def xread(self, streams: dict[str, str], count: int | None = None, block: int | None = None):
        self._check()
        [(stream, last_id)] = streams.items()
        entries = [e for e in self.streams.get(stream, []) if _seq(e[0]) > _seq(last_id)][:count]
        if not entries:
            await asyncio.sleep(0.01)
            return []
        return [[stream, entries]]

    async def set(self, key: str, value: bytes, ex: int | None = None) -> bool:
        self._check()
        self.values[key] = value
        return True

    async def strlen(self, key: str) -> int:
        self._check()
        return len(self.values.get(key, b""))

    async def get(self, key: str) -> bytes | None:
        self._check()
        return self.values.get(key)


@pytest.mark.asyncio
async def test_store_appends_record_to_conversation_stream():
    redis = FakeRedis()
    store = RedisStreamMessageStore(redis, stream_prefix="chat:thread")

    entry_id = await store.append("conv-1", make_record(created=100, content="hi"))

    [(stored_id, fields)] = redis.streams[stream_key("chat:thread", "conv-1")]
    assert entry_id == stored_id
    assert fields["change"] == "added"
    assert json.loads(fields["record"]) == make_record(created=100, content="hi")


@pytest.mark.asyncio
async def test_store_wraps_redis_errors():
    store = RedisStreamMessageStore(FakeRedis(broken=True), stream_prefix="chat:thread")

    with pytest.raises(PersistenceError):
        await store.append("conv-1", make_record())


@pytest.mark.asyncio
async def test_feed_delivers_history_then_new_entries():
    redis = FakeRedis()
    store = RedisStreamMessageStore(redis, stream_prefix="chat:thread")
    feed = RedisStreamChangeFeed(redis, stream_prefix="chat:thread", block_ms=10)
    received: list[ChangeEvent] = []

    async def on_change(event: ChangeEvent) -> None:
        received.append(event)

    first_id = await store.append("conv-1", make_record(created=1))
    await store.append("other", make_record(created=2))
    handle = await feed.subscribe("conv-1", on_change)
    await wait_until(lambda: len(received) == 1)

    second_id = await store.append("conv-1", make_record(created=3))
    await wait_until(lambda: len(received) == 2)
    await feed.unsubscribe(handle)

    assert [e.document_id for e in received] == [first_id, second_id]
    assert all(e.kind == ChangeKind.ADDED for e in received)
    assert received[1].record["created"] == 3


@pytest.mark.asyncio
async def test_feed_skips_undecodable_entries():
    redis = FakeRedis()
    stream = stream_key("chat:thread", "conv-1")
    await redis.xadd(stream, {"change": "added", "record": "{not json"})
    await redis.xadd(stream, {"change": "exploded", "record": "{}"})
    await redis.xadd(stream, {"change": "modified", "record": json.dumps(make_record())})
    feed = RedisStreamChangeFeed(redis, stream_prefix="chat:thread", block_ms=10)
    received: list[ChangeEvent] = []

    async def on_change(event: ChangeEvent) -> None:
        received.append(event)

    handle = await feed.subscribe("conv-1", on_change)
    await wait_until(lambda: len(received) == 1)
    await feed.unsubscribe(handle)

    assert received[0].kind == ChangeKind.MODIFIED
    assert received[0].document_id == "3-0"


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    redis = FakeRedis()
    store = RedisStreamMessageStore(redis, stream_prefix="chat:thread")
    feed = RedisStreamChangeFeed(redis, stream_prefix="chat:thread", block_ms=10)
    received: list[ChangeEvent] = []

    async def on_change(event: ChangeEvent) -> None:
        received.append(event)

    handle = await feed.subscribe("conv-1", on_change)
    await feed.unsubscribe(handle)
    await store.append("conv-1", make_record())
    await asyncio.sleep(0.05)

    assert received == []
    # A second unsubscribe is harmless.
    await feed.unsubscribe(handle)


@pytest.mark.asyncio
async def test_attachment_round_trip():
    redis = FakeRedis()
    attachments = RedisAttachmentStore(redis, key_prefix="chat:attachment")

    ref = await attachments.upload("conv-1", b"jpeg-bytes")

    assert ref.startswith(REF_SCHEME + "chat:attachment:conv-1:")
    assert await attachments.download(ref, max_bytes=1024) == b"jpeg-bytes"


@pytest.mark.asyncio
async def test_attachment_download_enforces_limit():
    redis = FakeRedis()
    attachments = RedisAttachmentStore(redis, key_prefix="chat:attachment")
    ref = await attachments.upload("conv-1", b"x" * 100)

    with pytest.raises(DownloadError):
        await attachments.download(ref, max_bytes=99)


@pytest.mark.asyncio
@pytest.mark.parametrize("ref", ["https://example.com/a.jpg", REF_SCHEME + "chat:attachment:conv-1:missing"])
async def test_attachment_download_rejects_unknown_refs(ref):
    attachments = RedisAttachmentStore(FakeRedis(), key_prefix="chat:attachment")

    with pytest.raises(DownloadError):
        await attachments.download(ref, max_bytes=1024)


@pytest.mark.asyncio
async def test_attachment_errors_are_wrapped():
    redis = FakeRedis()
    attachments = RedisAttachmentStore(redis, key_prefix="chat:attachment")
    ref = await attachments.upload("conv-1", b"data")
    redis.broken = True

    with pytest.raises(UploadError):
        await attachments.upload("conv-1", b"data")
    with pytest.raises(DownloadError):
        await attachments.download(ref, max_bytes=1024)


@pytest.mark.asyncio
async def test_attachment_rejects_empty_upload():
    attachments = RedisAttachmentStore(FakeRedis(), key_prefix="chat:attachment")

    with pytest.raises(UploadError):
        await attachments.upload("conv-1", b"")

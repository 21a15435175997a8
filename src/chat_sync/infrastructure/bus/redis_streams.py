"""Redis Streams backed message store and change feed.

Each conversation is one stream. Appending a message is an XADD; following a
conversation is an XREAD loop that starts at the beginning of the stream, so a
new subscriber first receives the history as ``added`` events and then every
new entry. Stream entry ids double as store-assigned message ids.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import redis.asyncio as aioredis

from chat_sync.application.dto.events import ChangeEvent
from chat_sync.application.exceptions import MalformedRecordError, PersistenceError
from chat_sync.application.ports.change_feed import OnChangeCallback, SubscriptionHandle
from chat_sync.domain.value_objects.enums import ChangeKind
from chat_sync.infrastructure.bus.serializer import deserialize_record, serialize_record

logger = logging.getLogger(__name__)


def stream_key(prefix: str, conversation_id: str) -> str:
    return f"{prefix}:{conversation_id}"


class RedisStreamMessageStore:
    """Implements application.ports.persistence.MessagePersistence."""

    def __init__(self, redis: aioredis.Redis, *, stream_prefix: str) -> None:
        self._redis = redis
        self._prefix = stream_prefix

    async def append(self, conversation_id: str, record: dict[str, Any]) -> str:
        stream = stream_key(self._prefix, conversation_id)
        try:
            entry_id = await self._redis.xadd(
                stream,
                {"change": ChangeKind.ADDED.value, "record": serialize_record(record)},
            )
        except aioredis.RedisError as exc:
            raise PersistenceError(f"XADD to {stream} failed: {exc}") from exc
        return str(entry_id)


def _to_change_event(entry_id: str, fields: dict[str, Any]) -> ChangeEvent:
    try:
        kind = ChangeKind(fields.get("change", ChangeKind.ADDED.value))
    except ValueError as exc:
        raise MalformedRecordError(f"Unknown change kind: {exc}") from exc
    record = deserialize_record(fields.get("record", ""))
    return ChangeEvent(kind=kind, record=record, document_id=entry_id)


class RedisStreamChangeFeed:
    """Implements application.ports.change_feed.ChangeFeedAdapter.

    Expects a client created with ``decode_responses=True``.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        stream_prefix: str,
        batch_size: int = 50,
        block_ms: int = 5000,
        retry_seconds: float = 5.0,
    ) -> None:
        self._redis = redis
        self._prefix = stream_prefix
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._retry_seconds = retry_seconds
        self._tasks: dict[str, asyncio.Task[None]] = {}

    async def subscribe(
        self,
        conversation_id: str,
        on_change: OnChangeCallback,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(
            subscription_id=uuid.uuid4().hex,
            conversation_id=conversation_id,
        )
        stream = stream_key(self._prefix, conversation_id)
        self._tasks[handle.subscription_id] = asyncio.create_task(
            self._follow(stream, on_change),
            name=f"change-feed-{conversation_id}",
        )
        logger.info("Change feed subscribed: stream=%s id=%s", stream, handle.subscription_id)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        task = self._tasks.pop(handle.subscription_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Change feed unsubscribed: id=%s", handle.subscription_id)

    async def close(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

    async def _follow(self, stream: str, on_change: OnChangeCallback) -> None:
        last_id = "0"
        while True:
            try:
                entries = await self._redis.xread(
                    {stream: last_id},
                    count=self._batch_size,
                    block=self._block_ms,
                )
                if not entries:
                    continue
                for _stream_name, messages in entries:
                    for entry_id, fields in messages:
                        last_id = entry_id
                        try:
                            event = _to_change_event(entry_id, fields)
                        except MalformedRecordError as exc:
                            logger.warning("Skipping entry %s on %s: %s", entry_id, stream, exc.detail)
                            continue
                        try:
                            await on_change(event)
                        except Exception:
                            logger.exception("Error dispatching entry %s on %s", entry_id, stream)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Change feed error on %s, retrying in %.1fs", stream, self._retry_seconds,
                )
                await asyncio.sleep(self._retry_seconds)

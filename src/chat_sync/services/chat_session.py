"""Chat session: one reconciler per open conversation, wired to its collaborators.

Every mutation of the canonical list runs on a single worker task that drains
a bounded queue. Change-feed callbacks and finished downloads only enqueue
work, so they never touch the list directly.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from functools import partial
from types import TracebackType
from typing import Any, Awaitable, Callable, Coroutine, Self, cast

from chat_sync.application.dto.events import ChangeEvent
from chat_sync.application.dto.reconciliation import RenderSnapshot
from chat_sync.application.exceptions import (
    ConflictError,
    DownloadError,
    MalformedRecordError,
    PersistenceError,
    UploadError,
    ValidationError,
)
from chat_sync.application.mappers.message import entity_to_record, record_to_entity
from chat_sync.application.ports.attachments import AttachmentService
from chat_sync.application.ports.change_feed import ChangeFeedAdapter, SubscriptionHandle
from chat_sync.application.ports.clock import Clock, SystemClock
from chat_sync.application.ports.persistence import MessagePersistence
from chat_sync.config import Settings
from chat_sync.domain.entities.message import ImageContent, Message, Sender, TextContent
from chat_sync.domain.value_objects.enums import ChangeKind
from chat_sync.services import images
from chat_sync.services.reconciler import MessageReconciler

logger = logging.getLogger(__name__)

OnRenderCallback = Callable[[RenderSnapshot], Coroutine[Any, Any, None]]
_Operation = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class SessionConfig:
    conversation_id: str
    sender: Sender
    max_download_bytes: int = 1024 * 1024
    max_image_side: int = 480
    jpeg_quality: int = 40
    queue_size: int = 256

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        conversation_id: str,
        sender: Sender,
    ) -> SessionConfig:
        return cls(
            conversation_id=conversation_id,
            sender=sender,
            max_download_bytes=settings.ATTACHMENT_MAX_DOWNLOAD_BYTES,
            max_image_side=settings.ATTACHMENT_MAX_SIDE,
            jpeg_quality=settings.ATTACHMENT_JPEG_QUALITY,
            queue_size=settings.SESSION_QUEUE_SIZE,
        )


class ChatSession:
    def __init__(
        self,
        config: SessionConfig,
        change_feed: ChangeFeedAdapter,
        store: MessagePersistence,
        attachments: AttachmentService,
        *,
        on_render: OnRenderCallback | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._feed = change_feed
        self._store = store
        self._attachments = attachments
        self._on_render = on_render
        self._clock = clock or SystemClock()

        self._reconciler = MessageReconciler(config.conversation_id)
        self._queue: asyncio.Queue[_Operation] = asyncio.Queue(maxsize=config.queue_size)
        self._worker: asyncio.Task[None] | None = None
        self._subscription: SubscriptionHandle | None = None
        self._downloads: set[asyncio.Task[None]] = set()
        # message keys with a download in flight or its insert still queued
        self._pending_images: set[tuple[Sender, datetime]] = set()
        # remote ref -> prepared bytes for images this session uploaded
        self._local_previews: dict[str, bytes] = {}
        self._sending_image = False
        self._closed = False

        self.viewport_at_bottom = True

    @property
    def conversation_id(self) -> str:
        return self._config.conversation_id

    @property
    def sender(self) -> Sender:
        return self._config.sender

    @property
    def is_open(self) -> bool:
        return self._worker is not None and not self._closed

    @property
    def is_sending_image(self) -> bool:
        return self._sending_image

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._reconciler.messages

    # -- lifecycle ---------------------------------------------------------

    async def open(self) -> None:
        if self._closed:
            raise ConflictError("Session already closed")
        if self._worker is not None:
            return

        # The worker must be draining before a feed replays history into the queue.
        self._worker = asyncio.create_task(
            self._run(), name=f"chat-session-{self.conversation_id}",
        )
        try:
            self._subscription = await self._feed.subscribe(
                self.conversation_id, self._on_change,
            )
        except BaseException:
            await self.close()
            raise
        logger.info(
            "Chat session opened: conversation=%s sender=%s",
            self.conversation_id, self.sender.sender_id,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._subscription is not None:
            await self._feed.unsubscribe(self._subscription)
            self._subscription = None

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass

        # Release anyone blocked in wait_idle() on work that will never run.
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        # In-flight downloads are left to finish; they check _closed.
        self._reconciler.clear()
        self._pending_images.clear()
        self._local_previews.clear()
        logger.info("Chat session closed: conversation=%s", self.conversation_id)

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def wait_idle(self) -> None:
        """Wait until queued work and pending downloads have settled."""
        while not self._closed:
            await self._queue.join()
            if not self._downloads:
                return
            await asyncio.gather(*self._downloads, return_exceptions=True)

    # -- local send path ---------------------------------------------------

    async def send_text(self, content: str) -> Message | None:
        """Persist a text message.

        The message is not inserted locally; it shows up when the change feed
        echoes it back.
        """
        self._ensure_not_closed()
        if not content or not content.strip():
            raise ValidationError("Message content is empty")

        message = Message(
            sender=self.sender,
            created=self._clock.now(),
            kind=TextContent(content),
        )
        return await self._persist(message)

    async def send_image(self, data: bytes) -> Message | None:
        """Upload an image, then persist a message referencing it.

        Only one image send may be outstanding per session.
        """
        self._ensure_not_closed()
        if self._sending_image:
            raise ConflictError("An image upload is already in progress")

        self._sending_image = True
        try:
            prepared = await asyncio.to_thread(
                images.prepare_for_upload,
                data,
                max_side=self._config.max_image_side,
                quality=self._config.jpeg_quality,
            )
            try:
                ref = await self._attachments.upload(self.conversation_id, prepared)
            except UploadError as exc:
                logger.warning(
                    "Image upload failed for conversation %s: %s",
                    self.conversation_id, exc.detail,
                )
                return None

            if not self._closed:
                self._local_previews[ref] = prepared
            message = Message(
                sender=self.sender,
                created=self._clock.now(),
                kind=ImageContent(remote_ref=ref, local_preview=prepared),
            )
            sent = await self._persist(message)
            if sent is None:
                self._local_previews.pop(ref, None)
            return sent
        finally:
            self._sending_image = False

    async def refresh_image(self, message_id: str) -> bool:
        """Download a message's image again and attach it in place."""
        self._ensure_not_closed()
        target = next((m for m in self._reconciler.messages if m.id == message_id), None)
        if target is None or not isinstance(target.kind, ImageContent):
            return False
        if target.kind.remote_ref is None:
            return False

        try:
            image = await self._download(target.kind.remote_ref)
        except DownloadError as exc:
            logger.warning("Image refresh for %s failed: %s", message_id, exc.detail)
            return False

        if self._closed:
            return False
        await self._queue.put(partial(self._attach, message_id, image))
        return True

    async def _persist(self, message: Message) -> Message | None:
        record = entity_to_record(message)
        try:
            message_id = await self._store.append(self.conversation_id, record)
        except PersistenceError as exc:
            logger.warning(
                "Failed to persist message in conversation %s: %s",
                self.conversation_id, exc.detail,
            )
            return None

        logger.debug("Persisted message %s in conversation %s", message_id, self.conversation_id)
        return replace(message, id=message_id)

    # -- remote change path ------------------------------------------------

    async def _on_change(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        await self._queue.put(partial(self._apply_change, event))

    async def _run(self) -> None:
        while True:
            operation = await self._queue.get()
            try:
                await operation()
            except Exception:
                logger.exception("Chat session %s: operation failed", self.conversation_id)
            finally:
                self._queue.task_done()

    async def _apply_change(self, event: ChangeEvent) -> None:
        if event.kind != ChangeKind.ADDED:
            logger.debug(
                "Ignoring %s change for %s in conversation %s",
                event.kind, event.document_id, self.conversation_id,
            )
            return

        try:
            message = record_to_entity(event.record, event.document_id)
        except MalformedRecordError as exc:
            logger.warning(
                "Dropping malformed record %s in conversation %s: %s",
                event.document_id, self.conversation_id, exc.detail,
            )
            return

        if message.needs_download:
            if message.key in self._pending_images or self._reconciler.contains(message.key):
                logger.debug(
                    "Image message %s already known in conversation %s",
                    message.id, self.conversation_id,
                )
                return
            ref = cast(str, cast(ImageContent, message.kind).remote_ref)
            preview = self._local_previews.pop(ref, None)
            if preview is None:
                self._start_download(message, ref)
                return
            message = message.with_image(preview)

        await self._insert(message)

    def _start_download(self, message: Message, ref: str) -> None:
        self._pending_images.add(message.key)
        task = asyncio.create_task(
            self._resolve_image(message, ref),
            name=f"chat-image-download-{message.id}",
        )
        self._downloads.add(task)
        task.add_done_callback(self._downloads.discard)

    async def _resolve_image(self, message: Message, ref: str) -> None:
        queued = False
        try:
            image = await self._download(ref)
            if self._closed:
                logger.debug("Session closed before image %s resolved", message.id)
                return
            await self._queue.put(partial(self._insert_downloaded, message.with_image(image)))
            queued = True
        except DownloadError as exc:
            logger.warning(
                "Dropping image message %s in conversation %s: %s",
                message.id, self.conversation_id, exc.detail,
            )
        finally:
            if not queued:
                self._pending_images.discard(message.key)

    async def _download(self, ref: str) -> bytes:
        data = await self._attachments.download(ref, self._config.max_download_bytes)
        return await asyncio.to_thread(images.validate_downloaded, data)

    # -- canonical list mutations (worker task only) -----------------------

    async def _insert(self, message: Message) -> None:
        outcome = self._reconciler.insert(message)
        if not outcome.inserted:
            return
        await self._render(
            self._reconciler.snapshot(
                should_scroll=self._reconciler.should_auto_scroll(outcome, self.viewport_at_bottom),
                changed_position=outcome.position,
            )
        )

    async def _insert_downloaded(self, message: Message) -> None:
        self._pending_images.discard(message.key)
        await self._insert(message)

    async def _attach(self, message_id: str, image: bytes) -> None:
        if not self._reconciler.attach_resolved_image(message_id, image):
            return
        await self._render(
            self._reconciler.snapshot(changed_position=self._reconciler.position_of(message_id))
        )

    async def _render(self, snapshot: RenderSnapshot) -> None:
        if self._on_render is not None:
            await self._on_render(snapshot)

    def _ensure_not_closed(self) -> None:
        if self._closed:
            raise ConflictError("Session is closed")

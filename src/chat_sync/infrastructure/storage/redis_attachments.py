"""Image attachments kept as raw bytes under Redis keys."""
from __future__ import annotations

import logging
import time
import uuid

import redis.asyncio as aioredis

from chat_sync.application.exceptions import DownloadError, UploadError

logger = logging.getLogger(__name__)

REF_SCHEME = "redis-attachment://"


class RedisAttachmentStore:
    """Implements application.ports.attachments.AttachmentService.

    Needs a client created without ``decode_responses`` so payloads stay bytes.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        key_prefix: str,
        ttl_seconds: int | None = None,
    ) -> None:
        self._redis = redis
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    async def upload(self, conversation_id: str, data: bytes) -> str:
        if not data:
            raise UploadError("Refusing to upload an empty payload")
        name = f"{uuid.uuid4().hex}{int(time.time() * 1000)}"
        key = f"{self._prefix}:{conversation_id}:{name}"
        try:
            await self._redis.set(key, data, ex=self._ttl)
        except aioredis.RedisError as exc:
            raise UploadError(f"SET {key} failed: {exc}") from exc
        logger.debug("Uploaded %d bytes to %s", len(data), key)
        return REF_SCHEME + key

    async def download(self, ref: str, max_bytes: int) -> bytes:
        if not ref.startswith(REF_SCHEME):
            raise DownloadError(f"Unsupported attachment reference: {ref}")
        key = ref[len(REF_SCHEME):]
        try:
            size = await self._redis.strlen(key)
            if size == 0:
                raise DownloadError(f"Attachment {key} not found")
            if size > max_bytes:
                raise DownloadError(f"Attachment {key} is {size} bytes, limit is {max_bytes}")
            data = await self._redis.get(key)
        except aioredis.RedisError as exc:
            raise DownloadError(f"GET {key} failed: {exc}") from exc
        if not data:
            raise DownloadError(f"Attachment {key} disappeared")
        return bytes(data)

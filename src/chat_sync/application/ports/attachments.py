from __future__ import annotations

from typing import Protocol


class AttachmentService(Protocol):
    async def upload(self, conversation_id: str, data: bytes) -> str:
        """Store image bytes and return a reference. Raises UploadError."""
        ...

    async def download(self, ref: str, max_bytes: int) -> bytes:
        """Fetch image bytes by reference. Raises DownloadError."""
        ...

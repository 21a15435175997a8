"""Image preparation before upload and validation after download."""
from __future__ import annotations

import io

from PIL import Image

from chat_sync.application.exceptions import DownloadError, ValidationError


def prepare_for_upload(data: bytes, *, max_side: int, quality: int) -> bytes:
    """Decode, shrink so the longer side fits ``max_side`` and re-encode as JPEG."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            converted = img if img.mode in ("RGB", "L") else img.convert("RGB")
            converted.thumbnail((max_side, max_side))
            out = io.BytesIO()
            converted.save(out, format="JPEG", quality=quality)
    except (OSError, Image.DecompressionBombError) as exc:
        raise ValidationError(f"Not a decodable image: {exc}") from exc
    return out.getvalue()


def validate_downloaded(data: bytes | None) -> bytes:
    if not data:
        raise DownloadError("Empty image payload")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (OSError, SyntaxError, Image.DecompressionBombError) as exc:
        raise DownloadError(f"Downloaded payload is not an image: {exc}") from exc
    return data

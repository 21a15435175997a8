from __future__ import annotations

import json
from typing import Any

from chat_sync.application.exceptions import MalformedRecordError


def serialize_record(record: dict[str, Any]) -> str:
    return json.dumps(record, separators=(",", ":"))


def deserialize_record(raw: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(f"Undecodable record: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedRecordError("Record is not a mapping")
    return data

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chat_sync.domain.value_objects.enums import ChangeKind


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One "document changed" notification from a change feed."""

    kind: ChangeKind
    record: dict[str, Any] = field(default_factory=dict)
    document_id: str | None = None

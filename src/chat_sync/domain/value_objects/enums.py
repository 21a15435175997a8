from __future__ import annotations

from enum import StrEnum


class ChangeKind(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class MessageKindType(StrEnum):
    TEXT = "text"
    IMAGE = "image"


class InsertStatus(StrEnum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"

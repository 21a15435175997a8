"""WebSocket message envelope models."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class WsInbound(BaseModel):
    """Client → Server."""

    type: str  # ping | subscribe | unsubscribe | message.send | image.send | viewport
    data: dict[str, Any] = {}


class WsOutbound(BaseModel):
    """Server → Client."""

    type: str  # pong | subscribed | unsubscribed | snapshot | image.sending | error
    data: dict[str, Any] = {}

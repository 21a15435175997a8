from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from chat_sync.api.deps import Collaborators, build_session, get_collaborators, get_session_manager
from chat_sync.api.v1.schemas.message import SnapshotView
from chat_sync.application.dto.reconciliation import RenderSnapshot
from chat_sync.application.exceptions import ConflictError, ValidationError
from chat_sync.config import settings
from chat_sync.domain.entities.message import Sender
from chat_sync.infrastructure.ws.manager import SessionManager
from chat_sync.infrastructure.ws.protocol import WsInbound, WsOutbound
from chat_sync.services.chat_session import ChatSession

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


@dataclass
class _Connection:
    key: str
    sender: Sender
    collaborators: Collaborators
    sessions: SessionManager
    uploads: set[asyncio.Task[None]] = field(default_factory=set)


@router.websocket("/ws/chat")
async def ws_chat(
    websocket: WebSocket,
    sender_id: str = Query(..., min_length=1),
    display_name: str | None = Query(None),
) -> None:
    sender = Sender(sender_id, display_name or settings.DEFAULT_DISPLAY_NAME)
    conn = _Connection(
        key=f"{sender_id}:{uuid.uuid4().hex[:8]}",
        sender=sender,
        collaborators=get_collaborators(websocket),
        sessions=get_session_manager(websocket),
    )
    await websocket.accept()
    logger.debug("WS connected: %s", conn.key)

    heartbeat_task = asyncio.create_task(
        _heartbeat(websocket), name=f"ws-heartbeat-{conn.key}",
    )
    try:
        await _read_loop(websocket, conn)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WS error for %s", conn.key)
    finally:
        heartbeat_task.cancel()
        # Uploads already under way finish against an open session.
        if conn.uploads:
            await asyncio.gather(*conn.uploads, return_exceptions=True)
        await conn.sessions.close_connection(conn.key)
        logger.debug("WS disconnected: %s", conn.key)


async def _heartbeat(ws: WebSocket) -> None:
    interval = settings.WS_HEARTBEAT_SECONDS
    try:
        while True:
            await asyncio.sleep(interval)
            await _send(ws, "pong")
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


async def _send(ws: WebSocket, event_type: str, data: dict[str, Any] | None = None) -> None:
    await ws.send_text(WsOutbound(type=event_type, data=data or {}).model_dump_json())


async def _send_quietly(ws: WebSocket, event_type: str, data: dict[str, Any] | None = None) -> None:
    try:
        await _send(ws, event_type, data)
    except Exception:
        logger.debug("Dropping %s for a closed socket", event_type)


async def _push_snapshot(ws: WebSocket, snapshot: RenderSnapshot) -> None:
    view = SnapshotView.from_snapshot(snapshot)
    await _send(ws, "snapshot", view.model_dump(mode="json"))


async def _read_loop(ws: WebSocket, conn: _Connection) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            msg = WsInbound.model_validate_json(raw)
        except Exception:
            await _send(ws, "error", {"code": "invalid_payload"})
            continue

        if msg.type == "ping":
            await _send(ws, "pong")

        elif msg.type == "subscribe":
            await _handle_subscribe(ws, conn, msg.data)

        elif msg.type == "unsubscribe":
            conversation_id = str(msg.data.get("conversation_id") or "")
            await conn.sessions.close(conn.key, conversation_id)
            await _send(ws, "unsubscribed", {"conversation_id": conversation_id})

        elif msg.type == "message.send":
            await _handle_send_text(ws, conn, msg.data)

        elif msg.type == "image.send":
            await _handle_send_image(ws, conn, msg.data)

        elif msg.type == "viewport":
            session = await _require_session(ws, conn, msg.data)
            if session is not None:
                session.viewport_at_bottom = bool(msg.data.get("at_bottom", True))

        else:
            await _send(ws, "error", {"code": "unknown_type", "type": msg.type})


async def _handle_subscribe(ws: WebSocket, conn: _Connection, data: dict[str, Any]) -> None:
    conversation_id = data.get("conversation_id")
    if not isinstance(conversation_id, str) or not conversation_id:
        await _send(ws, "error", {"code": "invalid_data", "detail": "conversation_id is required"})
        return

    session = build_session(
        conn.collaborators, conversation_id, conn.sender, partial(_push_snapshot, ws),
    )
    await conn.sessions.open(conn.key, session)
    await _send(ws, "subscribed", {"conversation_id": conversation_id})


async def _require_session(
    ws: WebSocket, conn: _Connection, data: dict[str, Any],
) -> ChatSession | None:
    conversation_id = str(data.get("conversation_id") or "")
    session = conn.sessions.get(conn.key, conversation_id)
    if session is None:
        await _send(ws, "error", {"code": "not_subscribed", "conversation_id": conversation_id})
    return session


async def _handle_send_text(ws: WebSocket, conn: _Connection, data: dict[str, Any]) -> None:
    session = await _require_session(ws, conn, data)
    if session is None:
        return

    content = data.get("content")
    if not isinstance(content, str):
        await _send(ws, "error", {"code": "invalid_data", "detail": "content must be a string"})
        return

    try:
        sent = await session.send_text(content)
    except (ValidationError, ConflictError) as exc:
        await _send(ws, "error", {"code": "invalid_data", "detail": exc.detail})
        return

    if sent is None:
        await _send(ws, "error", {"code": "send_failed"})


async def _handle_send_image(ws: WebSocket, conn: _Connection, data: dict[str, Any]) -> None:
    session = await _require_session(ws, conn, data)
    if session is None:
        return

    try:
        payload = base64.b64decode(str(data.get("data", "")), validate=True)
    except (binascii.Error, ValueError) as exc:
        await _send(ws, "error", {"code": "invalid_data", "detail": str(exc)})
        return

    if session.is_sending_image:
        await _send(ws, "error", {"code": "image_upload_in_progress"})
        return

    # Upload runs beside the read loop so the socket stays responsive.
    task = asyncio.create_task(
        _send_image(ws, session, payload), name=f"ws-image-upload-{conn.key}",
    )
    conn.uploads.add(task)
    task.add_done_callback(conn.uploads.discard)


async def _send_image(ws: WebSocket, session: ChatSession, payload: bytes) -> None:
    conversation_id = session.conversation_id
    await _send_quietly(ws, "image.sending", {"conversation_id": conversation_id, "sending": True})
    try:
        sent = await session.send_image(payload)
    except ValidationError as exc:
        await _send_quietly(ws, "error", {"code": "invalid_image", "detail": exc.detail})
        return
    except ConflictError as exc:
        await _send_quietly(ws, "error", {"code": "image_upload_in_progress", "detail": exc.detail})
        return
    finally:
        await _send_quietly(
            ws, "image.sending", {"conversation_id": conversation_id, "sending": False},
        )

    if sent is None:
        await _send_quietly(ws, "error", {"code": "send_failed"})

"""Collaborator wiring shared by routers."""
from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import HTTPConnection

from chat_sync.application.ports.attachments import AttachmentService
from chat_sync.application.ports.change_feed import ChangeFeedAdapter
from chat_sync.application.ports.persistence import MessagePersistence
from chat_sync.config import settings
from chat_sync.domain.entities.message import Sender
from chat_sync.infrastructure.ws.manager import SessionManager
from chat_sync.services.chat_session import ChatSession, OnRenderCallback, SessionConfig


@dataclass(frozen=True, slots=True)
class Collaborators:
    change_feed: ChangeFeedAdapter
    store: MessagePersistence
    attachments: AttachmentService


def get_collaborators(conn: HTTPConnection) -> Collaborators:
    return conn.app.state.collaborators


def get_session_manager(conn: HTTPConnection) -> SessionManager:
    return conn.app.state.sessions


def build_session(
    collaborators: Collaborators,
    conversation_id: str,
    sender: Sender,
    on_render: OnRenderCallback,
) -> ChatSession:
    return ChatSession(
        SessionConfig.from_settings(settings, conversation_id, sender),
        collaborators.change_feed,
        collaborators.store,
        collaborators.attachments,
        on_render=on_render,
    )

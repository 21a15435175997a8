from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat_sync.api.deps import Collaborators
from chat_sync.api.v1.routers import health, ws
from chat_sync.config import settings
from chat_sync.infrastructure.bus.redis_streams import (
    RedisStreamChangeFeed,
    RedisStreamMessageStore,
)
from chat_sync.infrastructure.storage.redis_attachments import RedisAttachmentStore
from chat_sync.infrastructure.ws.manager import SessionManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    app.state.redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    # Attachment payloads are binary.
    app.state.redis_blobs = aioredis.from_url(settings.REDIS_URL)
    logger.info("Redis connection pools created")

    change_feed = RedisStreamChangeFeed(
        app.state.redis,
        stream_prefix=settings.CHANGE_FEED_STREAM_PREFIX,
        batch_size=settings.CHANGE_FEED_BATCH_SIZE,
        block_ms=settings.CHANGE_FEED_BLOCK_MS,
        retry_seconds=settings.CHANGE_FEED_RETRY_SECONDS,
    )
    app.state.collaborators = Collaborators(
        change_feed=change_feed,
        store=RedisStreamMessageStore(
            app.state.redis, stream_prefix=settings.CHANGE_FEED_STREAM_PREFIX,
        ),
        attachments=RedisAttachmentStore(
            app.state.redis_blobs,
            key_prefix=settings.ATTACHMENT_KEY_PREFIX,
            ttl_seconds=settings.ATTACHMENT_TTL_SECONDS,
        ),
    )

    yield

    await app.state.sessions.close_all()
    await change_feed.close()
    await app.state.redis.aclose()
    await app.state.redis_blobs.aclose()
    logger.info("Redis connection pools closed")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Chat Sync Service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.sessions = SessionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(ws.router)

    return app

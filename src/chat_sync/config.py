from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    REDIS_URL: str = "redis://localhost:6379/0"

    CHANGE_FEED_STREAM_PREFIX: str = "chat:thread"
    CHANGE_FEED_BATCH_SIZE: int = 50
    CHANGE_FEED_BLOCK_MS: int = 5000
    CHANGE_FEED_RETRY_SECONDS: float = 5.0

    ATTACHMENT_KEY_PREFIX: str = "chat:attachment"
    ATTACHMENT_MAX_DOWNLOAD_BYTES: int = 1024 * 1024
    ATTACHMENT_MAX_SIDE: int = 480
    ATTACHMENT_JPEG_QUALITY: int = 40
    ATTACHMENT_TTL_SECONDS: int | None = None

    SESSION_QUEUE_SIZE: int = 256
    DEFAULT_DISPLAY_NAME: str = "Anonymous"

    CORS_ORIGINS: list[str] = ["*"]
    WS_HEARTBEAT_SECONDS: int = 30

    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()

"""
Core Configuration and Services
Consolidated configuration settings and service wiring for the memory chat backend
"""

import logging
from typing import Literal

from fastapi import FastAPI, Request
from openai import AsyncOpenAI
from pydantic_settings import BaseSettings, SettingsConfigDict
from qdrant_client import AsyncQdrantClient

logger = logging.getLogger(__name__)

PromptVersionName = Literal["default", "legacy", "optimized", "combined-v2", "combined-v3"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Relational store
    DATABASE_URL: str = "sqlite+aiosqlite:///./memorychat.sqlite"

    # Qdrant
    QDRANT_MODE: Literal["cloud", "embedded", "memory"] = "cloud"
    QDRANT_URL: str = "http://localhost:6333"
    QDRANT_API_KEY: str | None = None
    QDRANT_COLLECTION: str = "chat_memory"
    QDRANT_NAMESPACE: str = "chat-history"
    QDRANT_SEARCH_TIMEOUT_SECS: int = 10

    # Embeddings
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIM: int = 1536
    EMBED_CACHE_TTL_S: int = 600
    EMBED_CACHE_MAX: int = 512

    # LLM (primary + fallback tier)
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    LLM_MODEL: str = "gpt-4o"
    LLM_MODEL_FALLBACK: str = "gpt-4o-mini"
    VISION_MODEL: str = "gpt-4o-mini"
    LLM_TEMPERATURE: float = 1.0
    LLM_MAX_TOKENS: int = 1200
    OPENAI_TIMEOUT_SECS: int = 60
    LLM_MAX_RETRIES: int = 5
    LLM_RETRY_BASE_DELAY_SECS: float = 0.8
    LLM_FAILOVER_DELAY_SECS: float = 1.0
    FALLBACK_RESPONSE_TAG: str = "[🔄]"

    # Context assembly
    SEMANTIC_TOP_K: int = 4
    SEMANTIC_MAX_RESULTS: int = 12
    RECENT_HISTORY_LIMIT: int = 8
    COMBINED_CONTEXT_MAX: int = 20

    # Chunking
    CHUNK_SIZE: int = 800
    CHUNK_OVERLAP: int = 100

    # Duplicate detection
    DUPLICATE_TOP_K: int = 3
    DUPLICATE_SCORE_THRESHOLD: float = 0.95
    DUPLICATE_JACCARD_THRESHOLD: float = 0.90

    # Prompt
    PROMPT_VERSION: PromptVersionName = "combined-v3"
    ASSISTANT_NAME: str = "Mira"
    USER_DISPLAY_NAME: str = "friend"
    USER_PROFILE: str | None = None
    TIMEZONE: str = "UTC"

    # Identity defaults for requests that omit them
    DEFAULT_USER_ID: str = "anon"
    DEFAULT_CONVERSATION_ID: str = "default"

    # Side channel
    REDIS_URL: str | None = None
    QUEUE_TOPIC: str = "chat-events"

    # Images
    IMAGE_STORE_DIR: str = "./media"
    IMAGE_BASE_URL: str = "/media"
    MAX_IMAGES_PER_MESSAGE: int = 5
    MAX_IMAGE_BYTES: int = 8 * 1024 * 1024
    DESCRIBE_IMAGES: bool = True

    # Operations
    VERIFY_CHUNKS: bool = False

    CORS_ALLOWED_ORIGINS: list[str] = [
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://localhost:3000",
    ]


settings = Settings()


def get_qdrant_client() -> AsyncQdrantClient:
    """Create Qdrant client based on settings configuration."""
    if settings.QDRANT_MODE == "embedded":
        return AsyncQdrantClient(path="./qdrant_data")
    if settings.QDRANT_MODE == "memory":
        return AsyncQdrantClient(location=":memory:")
    return AsyncQdrantClient(
        url=settings.QDRANT_URL,
        api_key=settings.QDRANT_API_KEY or None,
        timeout=settings.QDRANT_SEARCH_TIMEOUT_SECS,
    )


def get_llm_client() -> AsyncOpenAI:
    """Create LLM client based on LLM configuration."""
    return AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.OPENAI_TIMEOUT_SECS,
        max_retries=0,  # retries are owned by the invocation engine
    )


def wire_services(app: FastAPI) -> None:
    """Wire all singleton services into app.state on startup."""
    from app.modules.memorychat.services.factory import build_chat_service

    logger.info("Wiring global services...")
    app.state.settings = settings
    app.state.qdrant = get_qdrant_client()
    app.state.llm_client = get_llm_client()
    app.state.chat_service = build_chat_service(
        settings,
        qdrant=app.state.qdrant,
        llm_client=app.state.llm_client,
    )
    logger.info("Service container wiring completed successfully")


async def perform_warmup(app: FastAPI) -> None:
    """Ensure the vector collection exists (call this from startup event)."""
    try:
        await app.state.chat_service.vector_store.ensure_collection(settings.EMBEDDING_DIM)
        logger.info("Qdrant collection ready")
    except Exception as warmup_error:
        logger.info(f"Qdrant warmup failed (non-critical): {warmup_error}")


def get_chat_service(request: Request):
    """FastAPI dependency returning the wired chat service."""
    return request.app.state.chat_service

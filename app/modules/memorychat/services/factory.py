"""Builds the chat service graph from settings."""

import logging
from typing import Optional

from openai import AsyncOpenAI
from qdrant_client import AsyncQdrantClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.memorychat.services.chat_service import ChatService
from app.modules.memorychat.services.context_merge import ContextMergeEngine
from app.modules.memorychat.services.duplicate import DuplicateDetector
from app.modules.memorychat.services.embeddings import Embedder, OpenAIEmbedder
from app.modules.memorychat.services.images import ImageService, ImageStore, LocalImageStore, VisionDescriber
from app.modules.memorychat.services.llm import ChatModel, LLMInvocationEngine, OpenAIChatModel
from app.modules.memorychat.services.persistence import PersistenceCoordinator
from app.modules.memorychat.services.prompts import PromptBuilder
from app.modules.memorychat.services.queue import MessageQueue, build_queue
from app.modules.memorychat.services.vector_store import ChatVectorStore
from core.config import Settings

logger = logging.getLogger(__name__)


def build_chat_service(
    settings: Settings,
    *,
    qdrant: AsyncQdrantClient,
    llm_client: Optional[AsyncOpenAI] = None,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
    embedder: Optional[Embedder] = None,
    primary: Optional[ChatModel] = None,
    fallback: Optional[ChatModel] = None,
    image_store: Optional[ImageStore] = None,
    queue: Optional[MessageQueue] = None,
    describe_images: Optional[bool] = None,
) -> ChatService:
    """Anything passed explicitly wins over what ``settings`` would build."""
    if sessions is None:
        from app.services.memory.db import SessionLocal

        sessions = SessionLocal

    if llm_client is None and (embedder is None or primary is None or fallback is None):
        raise ValueError("llm_client is required unless embedder and both models are supplied")

    embedder = embedder or OpenAIEmbedder(
        llm_client,
        model=settings.EMBEDDING_MODEL,
        cache_ttl=settings.EMBED_CACHE_TTL_S,
        cache_max=settings.EMBED_CACHE_MAX,
    )
    vector_store = ChatVectorStore(
        qdrant, embedder, collection=settings.QDRANT_COLLECTION, namespace=settings.QDRANT_NAMESPACE
    )

    merge_engine = ContextMergeEngine(
        vector_store,
        sessions,
        top_k=settings.SEMANTIC_TOP_K,
        max_semantic=settings.SEMANTIC_MAX_RESULTS,
        recent_limit=settings.RECENT_HISTORY_LIMIT,
        max_entries=settings.COMBINED_CONTEXT_MAX,
    )
    prompt_builder = PromptBuilder(merge_engine, version=settings.PROMPT_VERSION, tz_name=settings.TIMEZONE)

    primary = primary or OpenAIChatModel(llm_client, settings.LLM_MODEL, settings.LLM_TEMPERATURE, settings.LLM_MAX_TOKENS)
    fallback = fallback or OpenAIChatModel(
        llm_client, settings.LLM_MODEL_FALLBACK, settings.LLM_TEMPERATURE, settings.LLM_MAX_TOKENS
    )
    llm = LLMInvocationEngine(
        primary,
        fallback,
        max_retries=settings.LLM_MAX_RETRIES,
        base_delay=settings.LLM_RETRY_BASE_DELAY_SECS,
        failover_delay=settings.LLM_FAILOVER_DELAY_SECS,
        call_timeout=settings.OPENAI_TIMEOUT_SECS,
    )

    duplicates = DuplicateDetector(
        vector_store,
        top_k=settings.DUPLICATE_TOP_K,
        score_threshold=settings.DUPLICATE_SCORE_THRESHOLD,
        jaccard_threshold=settings.DUPLICATE_JACCARD_THRESHOLD,
    )
    persistence = PersistenceCoordinator(
        sessions,
        vector_store,
        duplicates,
        chunk_size=settings.CHUNK_SIZE,
        chunk_overlap=settings.CHUNK_OVERLAP,
        verify=settings.VERIFY_CHUNKS,
    )

    describe = settings.DESCRIBE_IMAGES if describe_images is None else describe_images
    describer = None
    if describe and llm_client is not None:
        describer = VisionDescriber(OpenAIChatModel(llm_client, settings.VISION_MODEL, None, 120))
    images = ImageService(
        image_store or LocalImageStore(settings.IMAGE_STORE_DIR, settings.IMAGE_BASE_URL),
        describer=describer,
        max_images=settings.MAX_IMAGES_PER_MESSAGE,
        max_bytes=settings.MAX_IMAGE_BYTES,
    )

    logger.info(
        f"[factory] chat service: {primary.name} -> {fallback.name}, prompt {settings.PROMPT_VERSION}, "
        f"collection {settings.QDRANT_COLLECTION}/{settings.QDRANT_NAMESPACE}"
    )
    return ChatService(
        sessions=sessions,
        vector_store=vector_store,
        merge_engine=merge_engine,
        prompt_builder=prompt_builder,
        llm=llm,
        persistence=persistence,
        images=images,
        queue=queue or build_queue(settings.REDIS_URL),
        queue_topic=settings.QUEUE_TOPIC,
        fallback_tag=settings.FALLBACK_RESPONSE_TAG,
    )

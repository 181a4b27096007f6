"""Chat pipeline orchestration.

images -> recent history -> prompt -> model -> persistence -> queue event.
The step in progress is tracked explicitly so a terminal failure reports
where it happened, together with the last assistant message that was stored
for the conversation.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.memorychat.services.context_merge import ContextEntry, ContextMergeEngine
from app.modules.memorychat.services.errors import ChatPipelineError, ConversationAccessError, FailureStep
from app.modules.memorychat.services.images import ImageService
from app.modules.memorychat.services.llm import LLMInvocationEngine
from app.modules.memorychat.services.persistence import ExchangeRecord, PersistenceCoordinator
from app.modules.memorychat.services.prompts import PromptBuilder
from app.modules.memorychat.services.queue import MessageQueue, NullMessageQueue
from app.modules.memorychat.services.request_context import RequestContext
from app.modules.memorychat.services.vector_store import ChatVectorStore, SearchHit
from app.services.memory.models import ChatMessage, Conversation, epoch_ms, utcnow
from app.services.memory.repo import (
    conversation_owner,
    get_message,
    latest_assistant_message,
    list_conversations,
    messages_for,
)
from core.config import settings
from core.utils.perf import Stopwatch

logger = logging.getLogger(__name__)

EXCHANGE_COMPLETED = "exchange.completed"


@dataclass
class ChatResult:
    status: Literal["ok", "degraded"]
    response: str
    conversation_id: str
    request_id: str
    elapsed_ms: int
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    used_fallback: bool = False
    model: Optional[str] = None
    image_urls: List[str] = field(default_factory=list)
    context: Dict[str, int] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @property
    def degraded(self) -> bool:
        return self.status == "degraded"


class ChatService:
    def __init__(
        self,
        *,
        sessions: async_sessionmaker[AsyncSession],
        vector_store: ChatVectorStore,
        merge_engine: ContextMergeEngine,
        prompt_builder: PromptBuilder,
        llm: LLMInvocationEngine,
        persistence: PersistenceCoordinator,
        images: ImageService,
        queue: Optional[MessageQueue] = None,
        queue_topic: str = settings.QUEUE_TOPIC,
        fallback_tag: str = settings.FALLBACK_RESPONSE_TAG,
    ):
        self.sessions = sessions
        self.vector_store = vector_store
        self.merge_engine = merge_engine
        self.prompt_builder = prompt_builder
        self.llm = llm
        self.persistence = persistence
        self.images = images
        self.queue = queue or NullMessageQueue()
        self.queue_topic = queue_topic
        self.fallback_tag = fallback_tag

    async def authorize(self, ctx: RequestContext) -> None:
        """Raise ``ConversationAccessError`` if another user owns the conversation."""
        async with self.sessions() as db:
            owner = await conversation_owner(db, ctx.conversation_id)
        if owner is not None and owner != ctx.user_id:
            logger.warning(f"[chat] {ctx.tag} rejected: conversation owned by another user")
            raise ConversationAccessError(ctx.conversation_id, ctx.user_id)

    async def _recent(self, ctx: RequestContext) -> List[ContextEntry]:
        try:
            return await self.merge_engine.recent_history(ctx)
        except Exception as e:
            logger.warning(f"[chat] recent history unavailable ({ctx.tag}): {e}")
            return []

    async def last_known_good(self, ctx: RequestContext) -> str:
        """Content of the latest stored assistant message, or ``""``."""
        try:
            async with self.sessions() as db:
                msg = await latest_assistant_message(db, ctx.conversation_id)
            return msg.content if msg else ""
        except Exception as e:
            logger.warning(f"[chat] could not load last assistant message ({ctx.tag}): {e}")
            return ""

    async def _publish(self, ctx: RequestContext, record: ExchangeRecord, result: ChatResult) -> None:
        payload = {
            "event": EXCHANGE_COMPLETED,
            "requestId": ctx.request_id,
            "conversationId": ctx.conversation_id,
            "userId": ctx.user_id,
            "userMessageId": record.user_message_id,
            "assistantMessageId": record.assistant_message_id,
            "response": result.response,
            "usedFallback": result.used_fallback,
            "model": result.model,
            "timestamp": epoch_ms(record.assistant_created_at),
        }
        try:
            await self.queue.send_to_queue(self.queue_topic, payload)
        except Exception as e:
            logger.warning(f"[chat] queue publish failed ({ctx.tag}): {e}")

    async def handle_message(
        self, ctx: RequestContext, text: str, images: Optional[Sequence[str]] = None
    ) -> ChatResult:
        """Run one exchange end to end; raises ``ChatPipelineError`` on terminal failure."""
        sw = Stopwatch()
        user_message_id = str(uuid.uuid4())
        assistant_message_id = str(uuid.uuid4())
        logger.info(f"[chat] {ctx.tag} user={ctx.user_id} text={len(text)} chars images={len(images or [])}")
        await self.authorize(ctx)

        step = FailureStep.IMAGE_PROCESSING
        try:
            processed = await self.images.process(images)

            step = FailureStep.PROMPT_BUILDING
            recent = await self._recent(ctx)
            prompt = await self.prompt_builder.build_prompt(text, ctx, recent=recent)

            step = FailureStep.MODEL_CALL
            ai = await self.llm.invoke(text, prompt.text, images=processed.data_uris, recent_history=recent)

            step = FailureStep.DATABASE_SAVE
            record = await self.persistence.record_exchange(
                ctx,
                user_message=text,
                ai=ai,
                user_message_id=user_message_id,
                assistant_message_id=assistant_message_id,
                images=processed,
                system_prompt=prompt.text,
            )
        except ConversationAccessError:
            raise
        except Exception as e:
            elapsed = sw.ms
            logger.error(f"[chat] {step.value} failed for {ctx.tag} after {elapsed} ms: {e}", exc_info=True)
            raise ChatPipelineError(step, elapsed, await self.last_known_good(ctx), e) from e

        result = ChatResult(
            status="ok",
            response=ai.display_text(self.fallback_tag),
            conversation_id=ctx.conversation_id,
            request_id=ctx.request_id,
            elapsed_ms=sw.ms,
            user_message_id=user_message_id,
            assistant_message_id=assistant_message_id,
            used_fallback=ai.used_fallback,
            model=ai.model,
            image_urls=processed.urls,
            context={
                "vector": prompt.context.vector_count,
                "database": prompt.context.database_count,
            },
        )
        await self._publish(ctx, record, result)
        logger.info(f"[chat] {ctx.tag} done in {result.elapsed_ms} ms (fallback={ai.used_fallback})")
        return result

    async def respond(self, ctx: RequestContext, text: str, images: Optional[Sequence[str]] = None) -> ChatResult:
        """Like ``handle_message`` but turns a terminal failure into a degraded result."""
        try:
            return await self.handle_message(ctx, text, images)
        except ChatPipelineError as e:
            return ChatResult(
                status="degraded",
                response=e.fallback_text,
                conversation_id=ctx.conversation_id,
                request_id=ctx.request_id,
                elapsed_ms=e.elapsed_ms,
                error={
                    "step": e.step.value,
                    "type": e.error_type,
                    "message": str(e.cause),
                    "duration_ms": e.elapsed_ms,
                    "timestamp": epoch_ms(utcnow()),
                },
            )

    async def search(self, ctx: RequestContext, query: str, top_k: int = settings.SEMANTIC_TOP_K) -> List[SearchHit]:
        sw = Stopwatch()
        try:
            return await self.vector_store.search(
                query, top_k, conversation_id=ctx.conversation_id, user_id=ctx.user_id
            )
        except Exception as e:
            raise ChatPipelineError(FailureStep.VECTOR_STORE, sw.ms, "", e) from e

    async def conversation_messages(self, ctx: RequestContext, limit: int = 100) -> List[ChatMessage]:
        await self.authorize(ctx)
        async with self.sessions() as db:
            return await messages_for(db, ctx.conversation_id, limit=limit)

    async def conversations(self, user_id: str, limit: int = 20) -> List[Conversation]:
        """Conversations of one user, most recently updated first."""
        async with self.sessions() as db:
            return await list_conversations(db, user_id, limit=limit)

    async def message(self, message_id: str, user_id: Optional[str] = None) -> Optional[ChatMessage]:
        """A stored message with its images; None when missing or owned by another user."""
        async with self.sessions() as db:
            msg = await get_message(db, message_id, with_images=True)
            if msg is None or user_id is None:
                return msg
            owner = await conversation_owner(db, msg.conversation_id)
        return msg if owner in (None, user_id) else None

"""Persistence Coordinator.

Records both sides of an exchange. The relational rows are written in one
transaction; vector indexing and the chunk-ID write-back that follow are
best-effort, so a message row may briefly exist without ``vectorChunkIds``
(see ``linkage.repair_chunk_links``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.memorychat.schema.metadata import MessageMetadata, linkage_fields
from app.modules.memorychat.services.chunking import plan_chunks
from app.modules.memorychat.services.duplicate import DuplicateDetector
from app.modules.memorychat.services.errors import ConversationAccessError
from app.modules.memorychat.services.images import ProcessedImages, enrich_text
from app.modules.memorychat.services.linkage import ChunkVerification, verify_chunks
from app.modules.memorychat.services.llm import LLMResult
from app.modules.memorychat.services.request_context import RequestContext
from app.modules.memorychat.services.vector_store import ChatVectorStore, VectorDocument
from app.services.memory.models import epoch_ms, utcnow
from app.services.memory.repo import (
    add_images,
    add_message,
    conversation_owner,
    ensure_conversation,
    message_exists,
    touch_conversation,
    update_message_meta,
)
from core.config import settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)

ASSISTANT_MIN_GAP = timedelta(milliseconds=100)


@dataclass
class ExchangeRecord:
    user_message_id: str
    assistant_message_id: str
    user_created_at: datetime
    assistant_created_at: datetime
    inserted: bool = True
    duplicate_skipped: bool = False
    user_chunk_ids: List[str] = field(default_factory=list)
    assistant_chunk_ids: List[str] = field(default_factory=list)
    chunked: bool = False
    linked: bool = False
    verification: Optional[ChunkVerification] = None


def assistant_timestamp(user_created_at: datetime, responded_at: datetime) -> datetime:
    """Assistant rows always sort strictly after the user row they answer."""
    return max(responded_at, user_created_at + ASSISTANT_MIN_GAP)


class PersistenceCoordinator:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        vector_store: ChatVectorStore,
        duplicates: DuplicateDetector,
        chunk_size: int = settings.CHUNK_SIZE,
        chunk_overlap: int = settings.CHUNK_OVERLAP,
        verify: bool = settings.VERIFY_CHUNKS,
    ):
        self.sessions = sessions
        self.vector_store = vector_store
        self.duplicates = duplicates
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.verify = verify

    async def _ensure_conversation(self, ctx: RequestContext, first_message: str) -> None:
        try:
            async with self.sessions() as db, db.begin():
                conv = await ensure_conversation(db, ctx.user_id, ctx.conversation_id, first_message)
                owner = conv.user_id
        except IntegrityError:
            # a concurrent request created it first
            logger.info(f"[persistence] conversation {ctx.conversation_id} created concurrently")
            async with self.sessions() as db:
                owner = await conversation_owner(db, ctx.conversation_id)
        if owner != ctx.user_id:
            raise ConversationAccessError(ctx.conversation_id, ctx.user_id)

    def _payload(
        self,
        ctx: RequestContext,
        role: str,
        message_id: str,
        created_at: datetime,
        chunk_index: int = 0,
        **extra: Any,
    ) -> Dict[str, Any]:
        return {
            "conversationId": ctx.conversation_id,
            "userId": ctx.user_id,
            "role": role,
            "timestamp": epoch_ms(created_at),
            "messageId": message_id,
            "chunkIndex": chunk_index,
            **extra,
        }

    async def _save_rows(
        self,
        ctx: RequestContext,
        user_message: str,
        ai: LLMResult,
        images: ProcessedImages,
        user_message_id: str,
        assistant_message_id: str,
        user_created_at: datetime,
        assistant_created_at: datetime,
        system_prompt: Optional[str],
    ) -> bool:
        user_meta = MessageMetadata(
            message_id=user_message_id,
            conversation_id=ctx.conversation_id,
            user_id=ctx.user_id,
            role="user",
            timestamp=epoch_ms(user_created_at),
            image_count=images.count,
            image_descriptions=images.descriptions,
        )
        assistant_meta = MessageMetadata(
            message_id=assistant_message_id,
            conversation_id=ctx.conversation_id,
            user_id=ctx.user_id,
            role="assistant",
            timestamp=epoch_ms(assistant_created_at),
            system_prompt_length=len(system_prompt) if system_prompt is not None else None,
            response_length=len(ai.response_text),
            used_fallback=ai.used_fallback,
            model=ai.model,
        )

        async with self.sessions() as db, db.begin():
            if await message_exists(db, user_message_id, ctx.conversation_id, "user"):
                logger.info(f"[persistence] user message {user_message_id} already stored, skipping insert")
                return False
            await add_message(
                db,
                ctx.conversation_id,
                "user",
                user_message,
                message_id=user_message_id,
                created_at=user_created_at,
                has_images=images.count > 0,
                meta=user_meta.dump(),
            )
            if images.count:
                await add_images(db, user_message_id, images.records)
            await add_message(
                db,
                ctx.conversation_id,
                "assistant",
                ai.response_text,
                message_id=assistant_message_id,
                created_at=assistant_created_at,
                full_prompt=system_prompt,
                meta=assistant_meta.dump(),
            )
            await touch_conversation(db, ctx.conversation_id)
        return True

    async def _index_user(
        self,
        ctx: RequestContext,
        user_message: str,
        images: ProcessedImages,
        message_id: str,
        created_at: datetime,
    ) -> tuple[List[str], bool]:
        """Returns (chunk IDs, skipped as duplicate)."""
        has_images = images.count > 0
        if await self.duplicates.is_duplicate(ctx, user_message, has_images):
            logger.info(f"[persistence] duplicate user message, not re-indexing {message_id}")
            return [], True
        doc = VectorDocument(
            id=message_id,
            text=enrich_text(user_message, images.count, images.descriptions),
            payload=self._payload(
                ctx,
                "user",
                message_id,
                created_at,
                originalText=user_message,
                hasImages=has_images,
                imageCount=images.count,
                imageDescriptions=images.descriptions,
                imageUrls=images.urls,
            ),
        )
        return [await self.vector_store.upsert(doc)], False

    async def _index_assistant(
        self, ctx: RequestContext, text: str, message_id: str, created_at: datetime
    ) -> tuple[List[str], bool]:
        plans = plan_chunks(message_id, text, self.chunk_size, self.chunk_overlap)
        chunked = not (len(plans) == 1 and plans[0].chunk_id == message_id)
        docs = [
            VectorDocument(
                id=p.chunk_id,
                text=p.text,
                payload=self._payload(ctx, "assistant", message_id, created_at, p.index, hasImages=False),
            )
            for p in plans
        ]
        ids = await self.vector_store.add_documents(docs)
        return ids, chunked

    async def _write_linkage(self, message_id: str, chunk_ids: List[str], chunked: bool) -> None:
        async with self.sessions() as db, db.begin():
            await update_message_meta(db, message_id, linkage_fields(chunk_ids, chunked))

    @profile_stage("persist_exchange")
    async def record_exchange(
        self,
        ctx: RequestContext,
        *,
        user_message: str,
        ai: LLMResult,
        user_message_id: str,
        assistant_message_id: str,
        images: Optional[ProcessedImages] = None,
        system_prompt: Optional[str] = None,
    ) -> ExchangeRecord:
        """Store the exchange; raises only if the relational transaction fails."""
        images = images or ProcessedImages()
        user_created_at = utcnow()
        assistant_created_at = assistant_timestamp(user_created_at, ai.responded_at)
        record = ExchangeRecord(
            user_message_id=user_message_id,
            assistant_message_id=assistant_message_id,
            user_created_at=user_created_at,
            assistant_created_at=assistant_created_at,
        )

        await self._ensure_conversation(ctx, user_message)
        record.inserted = await self._save_rows(
            ctx,
            user_message,
            ai,
            images,
            user_message_id,
            assistant_message_id,
            user_created_at,
            assistant_created_at,
            system_prompt,
        )
        if not record.inserted:
            return record

        try:
            record.user_chunk_ids, record.duplicate_skipped = await self._index_user(
                ctx, user_message, images, user_message_id, user_created_at
            )
        except Exception as e:
            logger.warning(f"[persistence] indexing user message {user_message_id} failed ({ctx.tag}): {e}")

        try:
            record.assistant_chunk_ids, record.chunked = await self._index_assistant(
                ctx, ai.response_text, assistant_message_id, assistant_created_at
            )
        except Exception as e:
            logger.warning(f"[persistence] indexing assistant message {assistant_message_id} failed ({ctx.tag}): {e}")

        try:
            if record.assistant_chunk_ids:
                await self._write_linkage(assistant_message_id, record.assistant_chunk_ids, record.chunked)
            await self._write_linkage(user_message_id, record.user_chunk_ids, False)
            record.linked = bool(record.assistant_chunk_ids)
        except Exception as e:
            logger.warning(f"[persistence] chunk linkage write-back failed ({ctx.tag}): {e}")

        if self.verify and record.assistant_chunk_ids:
            try:
                record.verification = await verify_chunks(
                    self.vector_store, record.user_chunk_ids + record.assistant_chunk_ids
                )
            except Exception as e:
                logger.warning(f"[persistence] chunk verification failed ({ctx.tag}): {e}")

        logger.info(
            f"[persistence] stored {user_message_id}/{assistant_message_id}: "
            f"{len(record.assistant_chunk_ids)} assistant chunk(s), chunked={record.chunked}, "
            f"duplicate_skipped={record.duplicate_skipped}"
        )
        return record

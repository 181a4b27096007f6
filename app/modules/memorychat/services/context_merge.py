"""Context Merge Engine.

Combines semantic recall from the vector store with the short-term history from
the relational store into one chronological, de-duplicated transcript for the
prompt. Semantic recall is an enhancement: if it fails the merge carries on
with recent history alone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.memorychat.services.request_context import RequestContext
from app.modules.memorychat.services.vector_store import ChatVectorStore, SearchHit
from app.services.memory.models import ChatMessage, epoch_ms
from app.services.memory.repo import last_messages
from core.config import settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)

FINGERPRINT_CHARS = 100


@dataclass
class ContextEntry:
    source: Literal["vector", "database"]
    role: str
    content: str
    timestamp: int  # epoch ms
    conversation_id: str
    id: str

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.role, self.content)


@dataclass
class CombinedContext:
    entries: List[ContextEntry] = field(default_factory=list)
    semantic: List[ContextEntry] = field(default_factory=list)
    recent: List[ContextEntry] = field(default_factory=list)

    @property
    def vector_count(self) -> int:
        return sum(1 for e in self.entries if e.source == "vector")

    @property
    def database_count(self) -> int:
        return sum(1 for e in self.entries if e.source == "database")


def fingerprint(role: str, content: str) -> str:
    normalized = " ".join((content or "").lower().split())
    return f"{role}:{normalized[:FINGERPRINT_CHARS]}"


def interleave(first: Sequence[SearchHit], second: Sequence[SearchHit], cap: int) -> List[SearchHit]:
    """Alternate first/second results so neither role crowds out the other."""
    out: List[SearchHit] = []
    for i in range(max(len(first), len(second))):
        for bucket in (first, second):
            if i < len(bucket) and len(out) < cap:
                out.append(bucket[i])
    return out


def dedupe(entries: Sequence[ContextEntry]) -> List[ContextEntry]:
    """First-seen wins on a (role, leading content) fingerprint, and on ID."""
    seen_fp: set[str] = set()
    seen_id: set[str] = set()
    out: List[ContextEntry] = []
    for e in entries:
        fp = e.fingerprint
        if fp in seen_fp or e.id in seen_id:
            continue
        seen_fp.add(fp)
        seen_id.add(e.id)
        out.append(e)
    return out


def chronological(entries: Sequence[ContextEntry]) -> List[ContextEntry]:
    return sorted(entries, key=lambda e: e.timestamp)


def entry_from_message(msg: ChatMessage) -> ContextEntry:
    return ContextEntry(
        source="database",
        role=msg.role,
        content=msg.content,
        timestamp=epoch_ms(msg.created_at) if msg.created_at else 0,
        conversation_id=msg.conversation_id,
        id=msg.id,
    )


class ContextMergeEngine:
    def __init__(
        self,
        vector_store: ChatVectorStore,
        sessions: async_sessionmaker[AsyncSession],
        top_k: int = settings.SEMANTIC_TOP_K,
        max_semantic: int = settings.SEMANTIC_MAX_RESULTS,
        recent_limit: int = settings.RECENT_HISTORY_LIMIT,
        max_entries: int = settings.COMBINED_CONTEXT_MAX,
    ):
        self.vector_store = vector_store
        self.sessions = sessions
        self.top_k = top_k
        self.max_semantic = max_semantic
        self.recent_limit = recent_limit
        self.max_entries = max_entries

    async def recent_history(self, ctx: RequestContext, limit: Optional[int] = None) -> List[ContextEntry]:
        """Last N messages of the conversation, oldest first."""
        async with self.sessions() as db:
            rows = await last_messages(db, ctx.conversation_id, limit=limit or self.recent_limit)
        return [entry_from_message(m) for m in rows]

    async def _sibling_chunks(self, message_id: str, retrieved: List[SearchHit]) -> List[SearchHit]:
        try:
            siblings = await self.vector_store.message_chunks(message_id)
        except Exception as e:
            logger.warning(f"[context-merge] could not load chunks of {message_id}, using retrieved ones: {e}")
            siblings = []
        return siblings or retrieved

    async def _reassemble(self, hits: List[SearchHit], ctx: RequestContext) -> List[ContextEntry]:
        groups: Dict[str, List[SearchHit]] = {}
        for hit in hits:
            key = hit.message_id if hit.role == "assistant" else hit.id
            groups.setdefault(key, []).append(hit)

        entries: List[ContextEntry] = []
        for key, members in groups.items():
            head = members[0]
            text = head.text.strip()
            if head.role == "assistant" and (len(members) > 1 or head.id != head.message_id):
                parts = await self._sibling_chunks(head.message_id, members)
                parts = sorted(parts, key=lambda h: h.chunk_index)
                text = " ".join(p.text.strip() for p in parts if p.text.strip())
            entries.append(
                ContextEntry(
                    source="vector",
                    role=head.role,
                    content=text,
                    timestamp=head.timestamp,
                    conversation_id=head.conversation_id or ctx.conversation_id,
                    id=key,
                )
            )
        return entries

    @profile_stage("semantic_context")
    async def semantic_context(self, query: str, ctx: RequestContext) -> List[ContextEntry]:
        user_hits, assistant_hits = await asyncio.gather(
            self.vector_store.search(
                query, self.top_k, conversation_id=ctx.conversation_id, user_id=ctx.user_id, role="user"
            ),
            self.vector_store.search(
                query, self.top_k, conversation_id=ctx.conversation_id, user_id=ctx.user_id, role="assistant"
            ),
        )
        balanced = interleave(user_hits, assistant_hits, self.max_semantic)
        non_empty = [h for h in balanced if h.text and h.text.strip()]
        entries = await self._reassemble(non_empty, ctx)
        return chronological(dedupe(entries))

    async def merge(
        self,
        query: str,
        ctx: RequestContext,
        recent: Optional[List[ContextEntry]] = None,
    ) -> CombinedContext:
        try:
            semantic = await self.semantic_context(query, ctx)
        except Exception as e:
            logger.warning(f"[context-merge] semantic search failed, continuing with recent history ({ctx.tag}): {e}")
            semantic = []

        if recent is None:
            try:
                recent = await self.recent_history(ctx)
            except Exception as e:
                logger.warning(f"[context-merge] recent history unavailable ({ctx.tag}): {e}")
                recent = []

        merged = chronological(dedupe([*semantic, *recent]))
        if len(merged) > self.max_entries:
            merged = merged[-self.max_entries:]
        logger.info(
            f"[context-merge] {len(merged)} entries ({len(semantic)} semantic, {len(recent)} recent) for {ctx.tag}"
        )
        return CombinedContext(entries=merged, semantic=semantic, recent=list(recent))

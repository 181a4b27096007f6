"""Checks and repairs for the message row -> vector document linkage."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.memorychat.schema.metadata import linkage_fields
from app.modules.memorychat.services.vector_store import ChatVectorStore
from app.services.memory.repo import messages_for, update_message_meta

logger = logging.getLogger(__name__)

REPAIR_SCAN_LIMIT = 10_000


@dataclass
class ChunkVerification:
    expected: List[str] = field(default_factory=list)
    found: List[str] = field(default_factory=list)

    @property
    def missing(self) -> List[str]:
        present = set(self.found)
        return [i for i in self.expected if i not in present]

    @property
    def ok(self) -> bool:
        return not self.missing


async def verify_chunks(vector_store: ChatVectorStore, ids: List[str]) -> ChunkVerification:
    hits = await vector_store.retrieve(ids)
    result = ChunkVerification(expected=list(ids), found=[h.id for h in hits])
    if result.ok:
        logger.info(f"[linkage] verified {len(ids)} chunk(s)")
    else:
        logger.warning(f"[linkage] {len(result.missing)} of {len(ids)} chunk(s) missing: {result.missing}")
    return result


async def repair_chunk_links(
    sessions: async_sessionmaker[AsyncSession],
    vector_store: ChatVectorStore,
    conversation_id: str,
    role: Optional[str] = "assistant",
    dry_run: bool = False,
) -> int:
    """Rebuild empty ``vectorChunkIds`` from documents that point back at the message.

    Returns the number of messages whose linkage was (or would be) repaired.
    """
    async with sessions() as db:
        rows = await messages_for(db, conversation_id, role=role, limit=REPAIR_SCAN_LIMIT)
        unlinked = [m for m in rows if not (m.meta or {}).get("vectorChunkIds")]

    repaired = 0
    for msg in unlinked:
        chunks = await vector_store.message_chunks(msg.id)
        if not chunks:
            continue
        ids = [c.id for c in chunks]
        chunked = len(ids) > 1 or ids[0] != msg.id
        repaired += 1
        if dry_run:
            logger.info(f"[linkage] would link {msg.id} -> {len(ids)} chunk(s)")
            continue
        async with sessions() as db, db.begin():
            await update_message_meta(db, msg.id, linkage_fields(ids, chunked))
        logger.info(f"[linkage] linked {msg.id} -> {len(ids)} chunk(s)")

    logger.info(f"[linkage] {repaired}/{len(unlinked)} unlinked message(s) repaired in {conversation_id}")
    return repaired

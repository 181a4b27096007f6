"""Maintenance tasks for stored chat memory.

Usage::

    python -m app.modules.memorychat.maintenance purge <conversation_id> [--dry-run]
    python -m app.modules.memorychat.maintenance migrate-vectors [--dry-run]
    python -m app.modules.memorychat.maintenance migrate-metadata [--dry-run]
    python -m app.modules.memorychat.maintenance repair-links <conversation_id> [--dry-run]
    python -m app.modules.memorychat.maintenance verify <chunk_id> [<chunk_id> ...]
    python -m app.modules.memorychat.maintenance reset [--no-reindex] [--dry-run]
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.memorychat.schema.metadata import LEGACY_CONVERSATION_KEY, linkage_fields, migrate_metadata
from app.modules.memorychat.services.chunking import plan_chunks
from app.modules.memorychat.services.linkage import repair_chunk_links, verify_chunks
from app.modules.memorychat.services.vector_store import ChatVectorStore, VectorDocument
from app.services.memory.models import epoch_ms
from app.services.memory.repo import (
    all_messages,
    conversation_counts,
    conversation_owner,
    delete_conversation,
    delete_conversation_messages,
    update_message_meta,
)

logger = logging.getLogger(__name__)


@dataclass
class PurgeReport:
    conversation_id: str
    messages: int
    images: int
    vectors: int
    dry_run: bool = False


async def purge_conversation(
    sessions: async_sessionmaker[AsyncSession],
    vector_store: ChatVectorStore,
    conversation_id: str,
    dry_run: bool = False,
) -> PurgeReport:
    """Remove every trace of a conversation from both stores."""
    docs = await vector_store.conversation_documents(conversation_id)
    ids = [d.id for d in docs]

    if dry_run:
        async with sessions() as db:
            messages, images = await conversation_counts(db, conversation_id)
        logger.info(
            f"[maintenance] dry run: {conversation_id} has {messages} message(s), "
            f"{images} image(s), {len(ids)} vector document(s)"
        )
        return PurgeReport(conversation_id, messages, images, len(ids), dry_run=True)

    await vector_store.delete(ids)
    async with sessions() as db, db.begin():
        messages, images = await delete_conversation_messages(db, conversation_id)
        await delete_conversation(db, conversation_id)
    logger.info(
        f"[maintenance] purged {conversation_id}: {messages} message(s), {images} image(s), {len(ids)} vector document(s)"
    )
    return PurgeReport(conversation_id, messages, images, len(ids))


async def migrate_vector_payloads(vector_store: ChatVectorStore, dry_run: bool = False) -> int:
    """Move the misspelled conversation key to ``conversationId`` on every document."""
    docs = await vector_store.legacy_documents()
    if dry_run:
        logger.info(f"[maintenance] dry run: {len(docs)} document(s) carry {LEGACY_CONVERSATION_KEY}")
        return len(docs)
    for doc in docs:
        value = doc.payload.get(LEGACY_CONVERSATION_KEY)
        if not doc.payload.get("conversationId"):
            await vector_store.set_payload(doc.id, {"conversationId": value})
        await vector_store.delete_payload_keys([doc.id], [LEGACY_CONVERSATION_KEY])
    logger.info(f"[maintenance] migrated {len(docs)} vector payload(s)")
    return len(docs)


async def migrate_message_metadata(
    sessions: async_sessionmaker[AsyncSession],
    batch_size: int = 500,
    dry_run: bool = False,
) -> int:
    """Rewrite stored message metadata to the current schema; returns rows changed."""
    changed = 0
    offset = 0
    while True:
        async with sessions() as db, db.begin():
            rows = await all_messages(db, batch_size=batch_size, offset=offset)
            for msg in rows:
                upgraded = migrate_metadata(
                    msg.meta,
                    message_id=msg.id,
                    conversation_id=msg.conversation_id,
                    role=msg.role,
                    timestamp=epoch_ms(msg.created_at),
                ).dump()
                if upgraded == (msg.meta or {}):
                    continue
                changed += 1
                if not dry_run:
                    # replaced, not merged, so legacy keys disappear
                    msg.meta = upgraded
        if len(rows) < batch_size:
            break
        offset += batch_size
    logger.info(f"[maintenance] {'would migrate' if dry_run else 'migrated'} metadata of {changed} message(s)")
    return changed


@dataclass
class ResetReport:
    namespace: str
    deleted: int
    messages: int = 0
    documents: int = 0
    dry_run: bool = False


async def reset_memory(
    sessions: async_sessionmaker[AsyncSession],
    vector_store: ChatVectorStore,
    reindex: bool = True,
    batch_size: int = 500,
    dry_run: bool = False,
) -> ResetReport:
    """Clear the vector namespace, then rebuild it from the stored messages."""
    namespace = vector_store.namespace
    existing = await vector_store.namespace_documents(namespace)
    if dry_run:
        logger.info(f"[maintenance] dry run: {namespace} holds {len(existing)} vector document(s)")
        return ResetReport(namespace, len(existing), dry_run=True)

    await vector_store.delete_by_namespace(namespace)
    report = ResetReport(namespace, len(existing))
    if not reindex:
        return report

    owners: Dict[str, Optional[str]] = {}
    offset = 0
    while True:
        async with sessions() as db, db.begin():
            rows = await all_messages(db, batch_size=batch_size, offset=offset)
            for msg in rows:
                if msg.conversation_id not in owners:
                    owners[msg.conversation_id] = await conversation_owner(db, msg.conversation_id)
                plans = plan_chunks(msg.id, msg.content)
                docs = [
                    VectorDocument(
                        id=p.chunk_id,
                        text=p.text,
                        payload={
                            "conversationId": msg.conversation_id,
                            "userId": owners[msg.conversation_id],
                            "role": msg.role,
                            "timestamp": epoch_ms(msg.created_at),
                            "messageId": msg.id,
                            "chunkIndex": p.index,
                            "originalText": msg.content,
                            "hasImages": bool(msg.has_images),
                        },
                    )
                    for p in plans
                ]
                ids = await vector_store.add_documents(docs)
                await update_message_meta(db, msg.id, linkage_fields(ids, len(ids) > 1 or ids[0] != msg.id))
                report.messages += 1
                report.documents += len(ids)
        if len(rows) < batch_size:
            break
        offset += batch_size
    logger.info(
        f"[maintenance] reset {namespace}: removed {report.deleted}, "
        f"reindexed {report.messages} message(s) as {report.documents} document(s)"
    )
    return report


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m app.modules.memorychat.maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("purge", help="delete a conversation from both stores")
    p.add_argument("conversation_id")
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("migrate-vectors", help=f"rename the {LEGACY_CONVERSATION_KEY} payload key")
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("migrate-metadata", help="upgrade message metadata to the current schema")
    p.add_argument("--batch-size", type=int, default=500)
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("repair-links", help="rebuild missing vectorChunkIds from the vector store")
    p.add_argument("conversation_id")
    p.add_argument("--role", choices=["user", "assistant"], default="assistant")
    p.add_argument("--dry-run", action="store_true")

    p = sub.add_parser("verify", help="check that chunk IDs exist in the vector store")
    p.add_argument("ids", nargs="+")

    p = sub.add_parser("reset", help="clear the vector namespace and reindex stored messages")
    p.add_argument("--no-reindex", action="store_true")
    p.add_argument("--batch-size", type=int, default=500)
    p.add_argument("--dry-run", action="store_true")
    return parser


async def run(argv: Optional[List[str]] = None) -> int:
    from app.services.memory.db import SessionLocal
    from app.services.memory.init_db import init_database
    from app.modules.memorychat.services.factory import build_chat_service
    from core.config import get_llm_client, get_qdrant_client, settings

    args = _parser().parse_args(argv)
    await init_database()
    service = build_chat_service(
        settings,
        qdrant=get_qdrant_client(),
        llm_client=get_llm_client(),
        sessions=SessionLocal,
        describe_images=False,
    )
    store = service.vector_store
    await store.ensure_collection(settings.EMBEDDING_DIM)

    if args.command == "purge":
        report = await purge_conversation(SessionLocal, store, args.conversation_id, dry_run=args.dry_run)
        print(report)
    elif args.command == "migrate-vectors":
        print(await migrate_vector_payloads(store, dry_run=args.dry_run))
    elif args.command == "migrate-metadata":
        print(await migrate_message_metadata(SessionLocal, batch_size=args.batch_size, dry_run=args.dry_run))
    elif args.command == "repair-links":
        print(await repair_chunk_links(SessionLocal, store, args.conversation_id, role=args.role, dry_run=args.dry_run))
    elif args.command == "verify":
        result = await verify_chunks(store, args.ids)
        print(f"found={len(result.found)} missing={result.missing}")
        return 0 if result.ok else 1
    elif args.command == "reset":
        report = await reset_memory(
            SessionLocal, store, reindex=not args.no_reindex, batch_size=args.batch_size, dry_run=args.dry_run
        )
        print(report)
    return 0


if __name__ == "__main__":
    import core.logging  # noqa: F401  (configures handlers)

    raise SystemExit(asyncio.run(run()))

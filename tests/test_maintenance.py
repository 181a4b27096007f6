import uuid

from app.modules.memorychat.maintenance import (
    migrate_message_metadata,
    migrate_vector_payloads,
    purge_conversation,
    reset_memory,
)
from app.modules.memorychat.schema.metadata import LEGACY_CONVERSATION_KEY, SCHEMA_VERSION
from app.modules.memorychat.services.linkage import repair_chunk_links, verify_chunks
from app.modules.memorychat.services.vector_store import ChatVectorStore, VectorDocument
from app.services.memory.repo import add_message, ensure_conversation, get_message, messages_for


async def _row(sessions, ctx, role, content, meta=None):
    async with sessions() as db, db.begin():
        await ensure_conversation(db, ctx.user_id, ctx.conversation_id)
        msg = await add_message(db, ctx.conversation_id, role, content, message_id=str(uuid.uuid4()), meta=meta)
        return msg.id


async def test_verify_chunks_reports_missing(vector_store, ctx):
    present = str(uuid.uuid4())
    await vector_store.upsert(VectorDocument(id=present, text="hi", payload={"conversationId": ctx.conversation_id}))
    absent = str(uuid.uuid4())

    result = await verify_chunks(vector_store, [present, absent])

    assert result.found == [present]
    assert result.missing == [absent]
    assert not result.ok


async def test_repair_rebuilds_missing_links(sessions, vector_store, ctx):
    message_id = await _row(sessions, ctx, "assistant", "a long answer", meta={"vectorChunkIds": []})
    chunk_ids = [str(uuid.uuid4()), str(uuid.uuid4())]
    await vector_store.add_documents(
        [
            VectorDocument(
                id=cid,
                text=f"part {i}",
                payload={"conversationId": ctx.conversation_id, "role": "assistant", "messageId": message_id, "chunkIndex": i},
            )
            for i, cid in enumerate(chunk_ids)
        ]
    )

    assert await repair_chunk_links(sessions, vector_store, ctx.conversation_id, dry_run=True) == 1
    async with sessions() as db:
        assert (await get_message(db, message_id)).meta["vectorChunkIds"] == []

    assert await repair_chunk_links(sessions, vector_store, ctx.conversation_id) == 1
    async with sessions() as db:
        meta = (await get_message(db, message_id)).meta
    assert meta["vectorChunkIds"] == chunk_ids
    assert meta["vectorChunkCount"] == 2
    assert meta["chunked"] is True


async def test_purge_removes_rows_and_legacy_documents(sessions, vector_store, ctx):
    await _row(sessions, ctx, "user", "hello")
    await _row(sessions, ctx, "assistant", "hi")
    await vector_store.add_documents(
        [
            VectorDocument(id=str(uuid.uuid4()), text="hello", payload={"conversationId": ctx.conversation_id}),
            VectorDocument(id=str(uuid.uuid4()), text="old", payload={LEGACY_CONVERSATION_KEY: ctx.conversation_id}),
            VectorDocument(id=str(uuid.uuid4()), text="other", payload={"conversationId": "someone-else"}),
        ]
    )

    dry = await purge_conversation(sessions, vector_store, ctx.conversation_id, dry_run=True)
    assert (dry.messages, dry.vectors) == (2, 2)

    report = await purge_conversation(sessions, vector_store, ctx.conversation_id)
    assert (report.messages, report.images, report.vectors) == (2, 0, 2)
    async with sessions() as db:
        assert await messages_for(db, ctx.conversation_id) == []
    assert await vector_store.conversation_documents(ctx.conversation_id) == []
    assert len(await vector_store.conversation_documents("someone-else")) == 1


async def test_migrate_vector_payloads_renames_legacy_key(vector_store):
    doc_id = str(uuid.uuid4())
    await vector_store.upsert(VectorDocument(id=doc_id, text="old", payload={LEGACY_CONVERSATION_KEY: "c-legacy"}))

    assert await migrate_vector_payloads(vector_store) == 1

    [hit] = await vector_store.retrieve([doc_id])
    assert hit.payload["conversationId"] == "c-legacy"
    assert LEGACY_CONVERSATION_KEY not in hit.payload
    assert await vector_store.legacy_documents() == []


async def test_migrate_message_metadata_upgrades_legacy_bags(sessions, ctx):
    legacy = {"id": "x", "metadata": {LEGACY_CONVERSATION_KEY: ctx.conversation_id, "role": "user"}, "pageContent": "hi"}
    message_id = await _row(sessions, ctx, "user", "hi", meta=legacy)

    assert await migrate_message_metadata(sessions, dry_run=True) == 1
    assert await migrate_message_metadata(sessions) == 1
    assert await migrate_message_metadata(sessions) == 0

    async with sessions() as db:
        meta = (await get_message(db, message_id)).meta
    assert meta["schemaVersion"] == SCHEMA_VERSION
    assert meta["conversationId"] == ctx.conversation_id
    assert "pageContent" not in meta and "metadata" not in meta


async def test_reset_clears_namespace_and_reindexes(sessions, vector_store, qdrant, embedder, ctx):
    long_answer = "\n\n".join(" ".join(f"Detail {p}.{s} about the trip plan." for s in range(12)) for p in range(6))
    user_id = await _row(sessions, ctx, "user", "plan my trip")
    answer_id = await _row(sessions, ctx, "assistant", long_answer)
    stale = str(uuid.uuid4())
    await vector_store.upsert(VectorDocument(id=stale, text="stale", payload={"conversationId": ctx.conversation_id}))
    neighbour = ChatVectorStore(qdrant, embedder, collection=vector_store.collection, namespace="other")
    kept = await neighbour.upsert(VectorDocument(id=str(uuid.uuid4()), text="kept", payload={}))

    dry = await reset_memory(sessions, vector_store, dry_run=True)
    assert (dry.deleted, dry.messages) == (1, 0)
    assert len(await vector_store.namespace_documents()) == 1

    report = await reset_memory(sessions, vector_store)

    assert report.deleted == 1
    assert report.messages == 2
    assert await vector_store.retrieve([stale]) == []
    assert [h.id for h in await neighbour.namespace_documents()] == [kept]
    docs = await vector_store.namespace_documents()
    assert len(docs) == report.documents
    assert {d.payload["userId"] for d in docs} == {ctx.user_id}
    async with sessions() as db:
        user_meta = (await get_message(db, user_id)).meta
        answer_meta = (await get_message(db, answer_id)).meta
    assert user_meta["vectorChunkIds"] == [user_id]
    assert user_meta["chunked"] is False
    assert answer_meta["chunked"] is True
    assert sorted(answer_meta["vectorChunkIds"]) == sorted(d.id for d in docs if d.message_id == answer_id)


async def test_reset_without_reindex_leaves_namespace_empty(sessions, vector_store, ctx):
    await _row(sessions, ctx, "user", "hello")
    await vector_store.upsert(VectorDocument(id=str(uuid.uuid4()), text="hello", payload={}))

    report = await reset_memory(sessions, vector_store, reindex=False)

    assert report.deleted == 1
    assert report.messages == 0
    assert await vector_store.namespace_documents() == []

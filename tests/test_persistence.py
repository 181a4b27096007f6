import uuid
from datetime import timedelta

import pytest

from app.modules.memorychat.services.duplicate import DuplicateDetector
from app.modules.memorychat.services.errors import ConversationAccessError
from app.modules.memorychat.services.llm import LLMResult
from app.modules.memorychat.services.persistence import PersistenceCoordinator, assistant_timestamp
from app.modules.memorychat.services.request_context import RequestContext
from app.services.memory.models import epoch_ms, utcnow
from app.services.memory.repo import get_message, messages_for

LONG_REPLY = "\n\n".join(
    " ".join(f"Point {p}.{s}: here is a fairly detailed thought about your week." for s in range(6)) for p in range(6)
)


def _ai(text: str, responded_at=None, used_fallback=False) -> LLMResult:
    return LLMResult(
        response_text=text,
        responded_at=responded_at or utcnow(),
        used_fallback=used_fallback,
        model="primary",
        attempts=1,
    )


def _coordinator(sessions, store, **kw):
    return PersistenceCoordinator(sessions, store, DuplicateDetector(store), chunk_size=800, chunk_overlap=100, **kw)


def _ids():
    return str(uuid.uuid4()), str(uuid.uuid4())


def test_assistant_timestamp_never_precedes_user():
    user_at = utcnow()
    assert assistant_timestamp(user_at, user_at - timedelta(seconds=5)) == user_at + timedelta(milliseconds=100)
    later = user_at + timedelta(seconds=2)
    assert assistant_timestamp(user_at, later) == later


async def test_records_both_rows_with_ordered_timestamps(sessions, vector_store, ctx):
    user_id, assistant_id = _ids()
    record = await _coordinator(sessions, vector_store).record_exchange(
        ctx,
        user_message="hello",
        ai=_ai("hi! how was your day?", responded_at=utcnow() - timedelta(seconds=30)),
        user_message_id=user_id,
        assistant_message_id=assistant_id,
        system_prompt="system prompt text",
    )

    async with sessions() as db:
        rows = await messages_for(db, ctx.conversation_id)
    assert [(m.role, m.content) for m in rows] == [("user", "hello"), ("assistant", "hi! how was your day?")]
    assert epoch_ms(rows[1].created_at) > epoch_ms(rows[0].created_at)
    assert rows[1].full_prompt == "system prompt text"
    assert record.inserted and record.linked


async def test_short_reply_is_single_unchunked_document(sessions, vector_store, ctx):
    user_id, assistant_id = _ids()
    await _coordinator(sessions, vector_store).record_exchange(
        ctx, user_message="hello", ai=_ai("short answer"), user_message_id=user_id, assistant_message_id=assistant_id
    )

    async with sessions() as db:
        assistant = await get_message(db, assistant_id)
        user = await get_message(db, user_id)
    assert assistant.meta["vectorChunkIds"] == [assistant_id]
    assert assistant.meta["vectorChunkCount"] == 1
    assert assistant.meta["chunked"] is False
    assert assistant.meta["responseLength"] == len("short answer")
    assert user.meta["vectorChunkIds"] == [user_id]
    assert [h.id for h in await vector_store.retrieve([user_id, assistant_id])]


async def test_long_reply_chunk_ids_round_trip(sessions, vector_store, ctx):
    user_id, assistant_id = _ids()
    record = await _coordinator(sessions, vector_store).record_exchange(
        ctx, user_message="tell me everything", ai=_ai(LONG_REPLY), user_message_id=user_id, assistant_message_id=assistant_id
    )

    async with sessions() as db:
        assistant = await get_message(db, assistant_id)
    stored_ids = assistant.meta["vectorChunkIds"]
    assert assistant.meta["chunked"] is True
    assert len(stored_ids) > 1
    assert assistant.meta["vectorChunkCount"] == len(stored_ids)
    assert stored_ids == record.assistant_chunk_ids

    chunks = await vector_store.message_chunks(assistant_id)
    assert [c.id for c in chunks] == stored_ids
    assert all(c.message_id == assistant_id for c in chunks)
    assert [c.chunk_index for c in chunks] == list(range(len(stored_ids)))
    assert all(c.conversation_id == ctx.conversation_id for c in chunks)


async def test_vector_failure_does_not_fail_the_exchange(sessions, ctx):
    class BrokenStore:
        async def search(self, *a, **kw):
            raise ConnectionError("down")

        async def upsert(self, doc):
            raise ConnectionError("down")

        async def add_documents(self, docs):
            raise ConnectionError("down")

    user_id, assistant_id = _ids()
    store = BrokenStore()
    record = await PersistenceCoordinator(sessions, store, DuplicateDetector(store)).record_exchange(
        ctx, user_message="hello", ai=_ai("hi"), user_message_id=user_id, assistant_message_id=assistant_id
    )

    assert record.inserted
    assert record.assistant_chunk_ids == []
    async with sessions() as db:
        assistant = await get_message(db, assistant_id)
    assert assistant is not None
    assert assistant.meta["vectorChunkIds"] == []
    assert assistant.meta["chunked"] is False


async def test_retry_with_same_message_id_is_not_reinserted(sessions, vector_store, ctx):
    user_id, assistant_id = _ids()
    coordinator = _coordinator(sessions, vector_store)
    await coordinator.record_exchange(
        ctx, user_message="hello", ai=_ai("hi"), user_message_id=user_id, assistant_message_id=assistant_id
    )
    again = await coordinator.record_exchange(
        ctx, user_message="hello", ai=_ai("hi"), user_message_id=user_id, assistant_message_id=str(uuid.uuid4())
    )

    assert again.inserted is False
    async with sessions() as db:
        assert len(await messages_for(db, ctx.conversation_id)) == 2


async def test_verification_reports_found_chunks(sessions, vector_store, ctx):
    user_id, assistant_id = _ids()
    record = await _coordinator(sessions, vector_store, verify=True).record_exchange(
        ctx, user_message="hello", ai=_ai(LONG_REPLY), user_message_id=user_id, assistant_message_id=assistant_id
    )

    assert record.verification is not None
    assert record.verification.ok
    assert set(record.verification.found) == set(record.user_chunk_ids + record.assistant_chunk_ids)


async def test_exchange_in_another_users_conversation_is_rejected(sessions, vector_store, ctx):
    coordinator = _coordinator(sessions, vector_store)
    user_id, assistant_id = _ids()
    await coordinator.record_exchange(
        ctx, user_message="hello", ai=_ai("hi"), user_message_id=user_id, assistant_message_id=assistant_id
    )

    intruder = RequestContext(user_id="user-2", conversation_id=ctx.conversation_id)
    user_id, assistant_id = _ids()
    with pytest.raises(ConversationAccessError):
        await coordinator.record_exchange(
            intruder, user_message="hey", ai=_ai("hi"), user_message_id=user_id, assistant_message_id=assistant_id
        )

    async with sessions() as db:
        rows = await messages_for(db, ctx.conversation_id)
    assert [m.content for m in rows] == ["hello", "hi"]

import base64

import pytest
from qdrant_client.http import models
from sqlalchemy import select

from app.modules.memorychat.services.chat_service import EXCHANGE_COMPLETED
from app.modules.memorychat.services.errors import ChatPipelineError, ConversationAccessError, FailureStep
from app.modules.memorychat.services.request_context import RequestContext
from app.services.memory.models import MessageImage
from app.services.memory.repo import conversation_owner, get_message, messages_for
from tests.fakes import ScriptedModel

PNG = base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32).decode("ascii")
JPEG_URI = "data:image/jpeg;base64," + base64.b64encode(b"\xff\xd8\xff\xe0" + b"\x01" * 32).decode("ascii")


async def _user_docs(service, ctx):
    flt = models.Filter(
        must=[
            models.FieldCondition(key="namespace", match=models.MatchValue(value=service.vector_store.namespace)),
            models.FieldCondition(key="conversationId", match=models.MatchValue(value=ctx.conversation_id)),
            models.FieldCondition(key="role", match=models.MatchValue(value="user")),
        ]
    )
    return await service.vector_store.scroll(flt)


async def test_hello_round_trip(make_service, sessions, ctx, queue):
    service = await make_service(primary=ScriptedModel("primary", ["hey! what's up?"]))

    result = await service.handle_message(ctx, "hello")

    assert result.status == "ok"
    assert result.response == "hey! what's up?"
    assert not result.used_fallback
    async with sessions() as db:
        rows = await messages_for(db, ctx.conversation_id)
    assert [(m.role, m.content) for m in rows] == [("user", "hello"), ("assistant", "hey! what's up?")]
    assert rows[0].id == result.user_message_id
    assert rows[1].id == result.assistant_message_id
    assert rows[1].meta["chunked"] is False
    assert rows[1].meta["vectorChunkIds"] == [result.assistant_message_id]

    topic, event = queue.sent[-1]
    assert event["event"] == EXCHANGE_COMPLETED
    assert event["assistantMessageId"] == result.assistant_message_id
    assert event["conversationId"] == ctx.conversation_id


async def test_second_turn_sees_first_in_prompt_and_history(make_service, ctx):
    primary = ScriptedModel("primary", ["noted, pasta it is", "you said pasta"])
    service = await make_service(primary=primary)

    await service.handle_message(ctx, "I had pasta for dinner")
    await service.handle_message(ctx, "what did I have for dinner?")

    system_prompt = primary.calls[1][0][1]
    assert "I had pasta for dinner" in system_prompt
    roles = [role for role, _ in primary.calls[1]]
    assert roles == ["system", "human", "assistant", "human"]


async def test_text_with_two_images(make_service, sessions, ctx):
    primary = ScriptedModel("primary", ["nice pictures"])
    service = await make_service(primary=primary)

    result = await service.handle_message(ctx, "look at these", images=[PNG, JPEG_URI])

    assert len(result.image_urls) == 2
    assert all(u.startswith("/media/") for u in result.image_urls)
    human_parts = primary.calls[0][-1][1]
    assert [p["type"] for p in human_parts] == ["text", "image_url", "image_url"]
    assert human_parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert human_parts[2]["image_url"]["url"] == JPEG_URI

    async with sessions() as db:
        user = await get_message(db, result.user_message_id, with_images=True)
    assert user.has_images
    assert [img.image_url for img in user.images] == result.image_urls
    assert [img.mime_type for img in user.images] == ["image/png", "image/jpeg"]
    assert user.meta["imageCount"] == 2


async def test_duplicate_resubmission_is_stored_but_not_reindexed(make_service, sessions, ctx):
    service = await make_service(primary=ScriptedModel("primary", ["first answer", "second answer"]))

    first = await service.handle_message(ctx, "look at these", images=[PNG, JPEG_URI])
    second = await service.handle_message(ctx, "look at these", images=[PNG, JPEG_URI])

    async with sessions() as db:
        users = await messages_for(db, ctx.conversation_id, role="user")
        image_rows = (await db.execute(select(MessageImage))).scalars().all()
    assert [m.id for m in users] == [first.user_message_id, second.user_message_id]
    assert len(image_rows) == 4
    assert users[1].meta["vectorChunkIds"] == []

    docs = await _user_docs(service, ctx)
    assert [d.id for d in docs] == [first.user_message_id]


async def test_fallback_answer_is_tagged(make_service, ctx):
    service = await make_service(
        primary=ScriptedModel("primary", [""]),
        fallback=ScriptedModel("fallback", ["backup answer"]),
    )

    result = await service.handle_message(ctx, "hello")

    assert result.used_fallback
    assert result.model == "fallback"
    assert result.response.endswith("backup answer")
    assert result.response.startswith(service.fallback_tag)


async def test_model_failure_reports_step_and_last_good_answer(make_service, ctx):
    primary = ScriptedModel("primary", ["earlier answer", RuntimeError("rate limited")])
    fallback = ScriptedModel("fallback", [RuntimeError("rate limited")])
    service = await make_service(primary=primary, fallback=fallback)
    await service.handle_message(ctx, "first")

    with pytest.raises(ChatPipelineError) as exc:
        await service.handle_message(ctx, "second")

    assert exc.value.step is FailureStep.MODEL_CALL
    assert exc.value.fallback_text == "earlier answer"
    assert exc.value.error_type == "ModelExhaustedError"

    degraded = await service.respond(ctx, "third")
    assert degraded.status == "degraded"
    assert degraded.response == "earlier answer"
    assert degraded.error["step"] == "model_call"
    assert degraded.error["type"] == "ModelExhaustedError"
    assert degraded.error["duration_ms"] == degraded.elapsed_ms
    assert degraded.error["timestamp"] > 0


async def test_bad_image_fails_at_image_step(make_service, sessions, ctx):
    service = await make_service()

    result = await service.respond(ctx, "see this", images=["not base64 at all!!"])

    assert result.degraded
    assert result.error["step"] == FailureStep.IMAGE_PROCESSING.value
    assert result.response == ""
    async with sessions() as db:
        assert await messages_for(db, ctx.conversation_id) == []


async def test_search_returns_indexed_messages(make_service, ctx):
    service = await make_service(primary=ScriptedModel("primary", ["mountains sound great"]))
    await service.handle_message(ctx, "thinking about hiking in the mountains")

    hits = await service.search(ctx, "hiking mountains", top_k=4)

    assert {h.role for h in hits} == {"user", "assistant"}
    assert any(h.original_text == "thinking about hiking in the mountains" for h in hits)


async def test_conversation_ids_are_not_shared_between_users(make_service, sessions):
    alice = RequestContext(user_id="alice", conversation_id="conv-x")
    bob = RequestContext(user_id="bob", conversation_id="conv-x")
    primary = ScriptedModel("primary", ["noted"])
    service = await make_service(primary=primary)
    await service.handle_message(alice, "my secret is 1234")

    with pytest.raises(ConversationAccessError):
        await service.respond(bob, "what is the secret?")
    with pytest.raises(ConversationAccessError):
        await service.conversation_messages(bob)

    # bob's request never reached the model, so nothing of alice's leaked into a prompt
    assert len(primary.calls) == 1
    async with sessions() as db:
        assert await conversation_owner(db, "conv-x") == "alice"
        rows = await messages_for(db, "conv-x")
    assert [m.content for m in rows] == ["my secret is 1234", "noted"]


async def test_search_and_reads_are_scoped_to_the_user(make_service):
    alice = RequestContext(user_id="alice", conversation_id="conv-a")
    bob = RequestContext(user_id="bob", conversation_id="conv-a")
    service = await make_service(primary=ScriptedModel("primary", ["noted"]))
    result = await service.handle_message(alice, "my secret is 1234")

    assert await service.search(bob, "secret 1234") == []
    assert await service.message(result.user_message_id, user_id="bob") is None
    assert (await service.message(result.user_message_id, user_id="alice")).content == "my secret is 1234"


async def test_conversations_are_listed_per_user(make_service):
    service = await make_service()
    await service.handle_message(RequestContext(user_id="alice", conversation_id="a-1"), "first chat")
    await service.handle_message(RequestContext(user_id="alice", conversation_id="a-2"), "second chat")
    await service.handle_message(RequestContext(user_id="bob", conversation_id="b-1"), "bob's chat")

    listed = await service.conversations("alice")

    assert {c.id for c in listed} == {"a-1", "a-2"}
    assert {c.title for c in listed} == {"first chat", "second chat"}

import uuid

from app.modules.memorychat.services.duplicate import DuplicateDetector, jaccard_similarity, normalize_text
from app.modules.memorychat.services.vector_store import VectorDocument


async def _index_user(store, ctx, text, has_images=False):
    mid = str(uuid.uuid4())
    await store.upsert(
        VectorDocument(
            id=mid,
            text=text,
            payload={
                "conversationId": ctx.conversation_id,
                "userId": ctx.user_id,
                "role": "user",
                "messageId": mid,
                "timestamp": 1,
                "originalText": text,
                "hasImages": has_images,
            },
        )
    )
    return mid


def test_normalize_and_jaccard():
    assert normalize_text("  Hello,   World! ") == "hello world"
    assert jaccard_similarity("Hello world", "hello, world!") == 1.0
    assert jaccard_similarity("a b c d", "a b c e") == 3 / 5
    assert jaccard_similarity("", "") == 1.0


async def test_identical_text_same_flag_is_duplicate(vector_store, ctx):
    await _index_user(vector_store, ctx, "what did I eat yesterday")
    detector = DuplicateDetector(vector_store)

    assert await detector.is_duplicate(ctx, "what did I eat yesterday", has_images=False)


async def test_image_flag_mismatch_is_not_duplicate(vector_store, ctx):
    await _index_user(vector_store, ctx, "look at this", has_images=True)
    detector = DuplicateDetector(vector_store)

    assert not await detector.is_duplicate(ctx, "look at this", has_images=False)
    assert await detector.is_duplicate(ctx, "look at this", has_images=True)


async def test_other_conversation_is_not_duplicate(vector_store, ctx):
    from app.modules.memorychat.services.request_context import RequestContext

    await _index_user(vector_store, ctx, "same words here")
    other = RequestContext(user_id=ctx.user_id, conversation_id="conv-other")

    assert not await DuplicateDetector(vector_store).is_duplicate(other, "same words here", has_images=False)


async def test_unrelated_text_is_not_duplicate(vector_store, ctx):
    await _index_user(vector_store, ctx, "planning a trip to the mountains next week")
    detector = DuplicateDetector(vector_store, score_threshold=0.999)

    assert not await detector.is_duplicate(ctx, "my cat knocked over a plant", has_images=False)


async def test_search_failure_fails_open(ctx):
    class Broken:
        async def search(self, *args, **kwargs):
            raise ConnectionError("qdrant down")

    assert not await DuplicateDetector(Broken()).is_duplicate(ctx, "anything", has_images=False)


async def test_other_user_in_same_conversation_is_not_duplicate(vector_store, ctx):
    from app.modules.memorychat.services.request_context import RequestContext

    await _index_user(vector_store, ctx, "same words here")
    other = RequestContext(user_id="user-2", conversation_id=ctx.conversation_id)

    assert not await DuplicateDetector(vector_store).is_duplicate(other, "same words here", has_images=False)

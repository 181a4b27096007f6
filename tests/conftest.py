"""Pytest fixtures for the memory chat backend."""

import os
import tempfile

# settings are read at import time; point everything at throwaway local backends first
_TMP = tempfile.mkdtemp(prefix="memorychat-tests-")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("QDRANT_MODE", "memory")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP}/default.sqlite")
os.environ.setdefault("IMAGE_STORE_DIR", os.path.join(_TMP, "media"))
os.environ.setdefault("DESCRIBE_IMAGES", "false")
os.environ.setdefault("LLM_RETRY_BASE_DELAY_SECS", "0")
os.environ.setdefault("LLM_FAILOVER_DELAY_SECS", "0")
os.environ.setdefault("LLM_MAX_RETRIES", "2")

from typing import Optional

import pytest
from qdrant_client import AsyncQdrantClient

from app.modules.memorychat.services.factory import build_chat_service
from app.modules.memorychat.services.images import LocalImageStore
from app.modules.memorychat.services.request_context import RequestContext
from app.modules.memorychat.services.vector_store import ChatVectorStore
from app.services.memory.db import make_engine, make_sessionmaker
from app.services.memory.init_db import init_database
from core.config import settings
from tests.fakes import DIM, HashingEmbedder, RecordingQueue, ScriptedModel


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.sqlite'}")
    assert await init_database(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine):
    return make_sessionmaker(engine)


@pytest.fixture
async def qdrant():
    client = AsyncQdrantClient(location=":memory:")
    yield client
    await client.close()


@pytest.fixture
async def vector_store(qdrant, embedder) -> ChatVectorStore:
    store = ChatVectorStore(qdrant, embedder, collection="test_chat_memory", namespace="test")
    await store.ensure_collection(DIM)
    return store


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(user_id="user-1", conversation_id="conv-1")


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def make_service(qdrant, sessions, embedder, queue, tmp_path):
    """Factory: ``await make_service(primary=..., fallback=...)``."""

    async def _make(primary: Optional[ScriptedModel] = None, fallback: Optional[ScriptedModel] = None):
        service = build_chat_service(
            settings,
            qdrant=qdrant,
            sessions=sessions,
            embedder=embedder,
            primary=primary or ScriptedModel("primary", ["hey there"]),
            fallback=fallback or ScriptedModel("fallback", ["fallback reply"]),
            image_store=LocalImageStore(str(tmp_path / "media"), "/media"),
            queue=queue,
            describe_images=False,
        )
        await service.vector_store.ensure_collection(DIM)
        return service

    return _make

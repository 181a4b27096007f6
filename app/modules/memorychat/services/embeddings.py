from typing import List, Protocol
import hashlib
import logging
import time

from openai import AsyncOpenAI

from core.config import settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed_query(self, text: str) -> List[float]: ...

    async def embed_documents(self, texts: List[str]) -> List[List[float]]: ...


def _ekey(model: str, text: str) -> str:
    h = hashlib.blake2b(text.encode("utf-8"), digest_size=16).hexdigest()
    return f"{model}:{h}"


class OpenAIEmbedder:
    """OpenAI embeddings with a small TTL cache for repeated queries."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = settings.EMBEDDING_MODEL,
        cache_ttl: int = settings.EMBED_CACHE_TTL_S,
        cache_max: int = settings.EMBED_CACHE_MAX,
        batch_size: int = 64,
    ):
        self.client = client
        self.model = model
        self.batch_size = batch_size
        self._ttl = cache_ttl
        self._max = cache_max
        self._cache: dict[str, tuple[float, List[float]]] = {}

    def _cache_get(self, text: str):
        key = _ekey(self.model, text)
        item = self._cache.get(key)
        if not item:
            return None
        ts, vec = item
        if time.time() - ts > self._ttl:
            self._cache.pop(key, None)
            return None
        return vec

    def _cache_put(self, text: str, vec: List[float]):
        if len(self._cache) >= self._max:
            self._cache.pop(next(iter(self._cache)))
        self._cache[_ekey(self.model, text)] = (time.time(), vec)

    @profile_stage("embedding")
    async def embed_query(self, text: str) -> List[float]:
        hit = self._cache_get(text)
        if hit is not None:
            return hit
        res = await self.client.embeddings.create(model=self.model, input=text)
        vec = res.data[0].embedding
        self._cache_put(text, vec)
        return vec

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        out: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            logger.debug(f"[embeddings] batch {i // self.batch_size + 1}: {len(batch)} texts")
            res = await self.client.embeddings.create(model=self.model, input=batch)
            out.extend(d.embedding for d in res.data)
        return out

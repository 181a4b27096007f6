"""Qdrant-backed chat memory: semantic search and document upserts for chat messages."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models

from app.modules.memorychat.schema.metadata import LEGACY_CONVERSATION_KEY
from app.modules.memorychat.services.embeddings import Embedder
from core.config import settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)

NAMESPACE_KEY = "namespace"
_INDEXED_KEYS = ("namespace", "conversationId", "userId", "role", "messageId")
_SCROLL_PAGE = 256


@dataclass
class VectorDocument:
    """One indexed fragment of a message; ``payload`` holds the camelCase metadata."""

    id: str
    text: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    id: str
    text: str
    score: Optional[float]
    payload: Dict[str, Any]

    @classmethod
    def from_point(cls, point) -> "SearchHit":
        payload = dict(point.payload or {})
        return cls(
            id=str(point.id),
            text=payload.get("text", ""),
            score=getattr(point, "score", None),
            payload=payload,
        )

    @property
    def role(self) -> str:
        return self.payload.get("role", "unknown")

    @property
    def timestamp(self) -> int:
        return int(self.payload.get("timestamp") or 0)

    @property
    def message_id(self) -> str:
        return self.payload.get("messageId") or self.payload.get("id") or self.id

    @property
    def chunk_index(self) -> int:
        return int(self.payload.get("chunkIndex") or 0)

    @property
    def conversation_id(self) -> Optional[str]:
        return self.payload.get("conversationId") or self.payload.get(LEGACY_CONVERSATION_KEY)

    @property
    def original_text(self) -> str:
        return self.payload.get("originalText") or self.text

    @property
    def has_images(self) -> bool:
        return bool(self.payload.get("hasImages", False))


def _match(key: str, value: Any) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


class ChatVectorStore:
    """Thin adapter over one Qdrant collection, partitioned by a ``namespace`` payload key."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        embedder: Embedder,
        collection: str = settings.QDRANT_COLLECTION,
        namespace: str = settings.QDRANT_NAMESPACE,
    ):
        self.client = client
        self.embedder = embedder
        self.collection = collection
        self.namespace = namespace
        self._ready = False

    async def ensure_collection(self, dim: int) -> None:
        if self._ready:
            return
        if not await self.client.collection_exists(self.collection):
            await self.client.create_collection(
                collection_name=self.collection,
                vectors_config=models.VectorParams(size=dim, distance=models.Distance.COSINE),
            )
            logger.info(f"[vector-store] created collection {self.collection} (dim={dim})")
            for key in _INDEXED_KEYS:
                try:
                    await self.client.create_payload_index(
                        collection_name=self.collection,
                        field_name=key,
                        field_schema=models.PayloadSchemaType.KEYWORD,
                    )
                except Exception as e:
                    logger.warning(f"[vector-store] payload index on {key} not created: {e}")
        self._ready = True

    def _filter(
        self,
        *,
        namespace: Optional[str] = None,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> models.Filter:
        must = [_match(NAMESPACE_KEY, namespace or self.namespace)]
        if conversation_id:
            must.append(_match("conversationId", conversation_id))
        if user_id:
            must.append(_match("userId", user_id))
        if role:
            must.append(_match("role", role))
        if message_id:
            must.append(_match("messageId", message_id))
        return models.Filter(must=must)

    @profile_stage("vector_search")
    async def search(
        self,
        query: str,
        top_k: int,
        *,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[SearchHit]:
        """Top-K most similar documents, best match first."""
        vec = await self.embedder.embed_query(query)
        res = await self.client.query_points(
            collection_name=self.collection,
            query=vec,
            query_filter=self._filter(conversation_id=conversation_id, user_id=user_id, role=role),
            limit=top_k,
            with_payload=True,
        )
        return [SearchHit.from_point(p) for p in res.points]

    async def upsert(self, doc: VectorDocument) -> str:
        ids = await self.add_documents([doc])
        return ids[0]

    async def add_documents(self, docs: Iterable[VectorDocument]) -> List[str]:
        docs = list(docs)
        if not docs:
            return []
        vectors = await self.embedder.embed_documents([d.text for d in docs])
        points = [
            models.PointStruct(
                id=d.id,
                vector=vec,
                payload={**d.payload, "id": d.id, "text": d.text, NAMESPACE_KEY: self.namespace},
            )
            for d, vec in zip(docs, vectors)
        ]
        await self.client.upsert(collection_name=self.collection, points=points, wait=True)
        logger.info(f"[vector-store] upserted {len(points)} document(s) into {self.collection}/{self.namespace}")
        return [d.id for d in docs]

    async def retrieve(self, ids: List[str]) -> List[SearchHit]:
        if not ids:
            return []
        points = await self.client.retrieve(collection_name=self.collection, ids=list(ids), with_payload=True)
        return [SearchHit.from_point(p) for p in points]

    async def scroll(self, flt: models.Filter) -> List[SearchHit]:
        out: List[SearchHit] = []
        offset = None
        while True:
            points, offset = await self.client.scroll(
                collection_name=self.collection,
                scroll_filter=flt,
                limit=_SCROLL_PAGE,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            out.extend(SearchHit.from_point(p) for p in points)
            if offset is None:
                return out

    async def message_chunks(self, message_id: str) -> List[SearchHit]:
        """All documents carrying ``messageId`` as back-reference, in chunk order."""
        hits = await self.scroll(self._filter(message_id=message_id))
        return sorted(hits, key=lambda h: h.chunk_index)

    async def conversation_documents(self, conversation_id: str) -> List[SearchHit]:
        """Every document of a conversation, including ones written under the legacy key."""
        flt = models.Filter(
            must=[_match(NAMESPACE_KEY, self.namespace)],
            should=[_match("conversationId", conversation_id), _match(LEGACY_CONVERSATION_KEY, conversation_id)],
        )
        return await self.scroll(flt)

    async def namespace_documents(self, namespace: Optional[str] = None) -> List[SearchHit]:
        return await self.scroll(self._filter(namespace=namespace))

    async def legacy_documents(self) -> List[SearchHit]:
        flt = models.Filter(
            must=[_match(NAMESPACE_KEY, self.namespace)],
            must_not=[models.IsEmptyCondition(is_empty=models.PayloadField(key=LEGACY_CONVERSATION_KEY))],
        )
        return await self.scroll(flt)

    async def set_payload(self, point_id: str, payload: Dict[str, Any]) -> None:
        await self.client.set_payload(collection_name=self.collection, payload=payload, points=[point_id], wait=True)

    async def delete_payload_keys(self, point_ids: List[str], keys: List[str]) -> None:
        await self.client.delete_payload(collection_name=self.collection, keys=keys, points=point_ids, wait=True)

    async def delete(self, ids: List[str]) -> None:
        if not ids:
            return
        await self.client.delete(
            collection_name=self.collection,
            points_selector=models.PointIdsList(points=list(ids)),
            wait=True,
        )
        logger.info(f"[vector-store] deleted {len(ids)} document(s)")

    async def delete_by_namespace(self, namespace: str) -> None:
        await self.client.delete(
            collection_name=self.collection,
            points_selector=models.FilterSelector(filter=self._filter(namespace=namespace)),
            wait=True,
        )
        logger.info(f"[vector-store] cleared namespace {namespace}")

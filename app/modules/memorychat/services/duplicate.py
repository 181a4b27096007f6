import logging
import re

from app.modules.memorychat.services.request_context import RequestContext
from app.modules.memorychat.services.vector_store import ChatVectorStore
from core.config import settings

logger = logging.getLogger(__name__)

_PUNCT = re.compile(r"[^\w\s]")
_WS = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    return _WS.sub(" ", _PUNCT.sub("", (text or "").lower())).strip()


def jaccard_similarity(a: str, b: str) -> float:
    """Word-set Jaccard similarity of two texts after normalization."""
    na, nb = normalize_text(a), normalize_text(b)
    if na == nb:
        return 1.0
    wa, wb = set(na.split(" ")), set(nb.split(" "))
    union = wa | wb
    if not union:
        return 0.0
    return len(wa & wb) / len(union)


class DuplicateDetector:
    """Decides whether a user message is already indexed in the conversation."""

    def __init__(
        self,
        vector_store: ChatVectorStore,
        top_k: int = settings.DUPLICATE_TOP_K,
        score_threshold: float = settings.DUPLICATE_SCORE_THRESHOLD,
        jaccard_threshold: float = settings.DUPLICATE_JACCARD_THRESHOLD,
    ):
        self.vector_store = vector_store
        self.top_k = top_k
        self.score_threshold = score_threshold
        self.jaccard_threshold = jaccard_threshold

    async def is_duplicate(self, ctx: RequestContext, content: str, has_images: bool) -> bool:
        """Fail-open: any error during the check means "not a duplicate"."""
        try:
            hits = await self.vector_store.search(
                content, self.top_k, conversation_id=ctx.conversation_id, user_id=ctx.user_id, role="user"
            )
        except Exception as e:
            logger.warning(f"[duplicate] check failed, treating as new ({ctx.tag}): {e}")
            return False

        wanted = content.strip().lower()
        for hit in hits:
            if hit.has_images != has_images:
                continue
            original = hit.original_text
            if hit.score is not None and hit.score >= self.score_threshold:
                logger.info(f"[duplicate] score {hit.score:.3f} match for {content[:50]!r}")
                return True
            if original.strip().lower() == wanted:
                logger.info(f"[duplicate] exact match for {content[:50]!r} (has_images={has_images})")
                return True
            similarity = jaccard_similarity(original, content)
            if similarity >= self.jaccard_threshold:
                logger.info(f"[duplicate] text similarity {similarity:.3f} for {content[:50]!r}")
                return True
        return False

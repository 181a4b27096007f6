import json
import logging
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as redis

from core.config import settings

logger = logging.getLogger(__name__)


def queue_key(topic: str) -> str:
    return f"queue:{topic}"


class MessageQueue(Protocol):
    async def send_to_queue(self, topic: str, payload: Dict[str, Any]) -> bool: ...

    async def is_healthy(self) -> bool: ...

    async def close(self) -> None: ...


class RedisMessageQueue:
    """Fire-and-forget publisher over Redis lists (``RPUSH queue:<topic>``)."""

    def __init__(self, client: redis.Redis):
        self._r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisMessageQueue":
        return cls(redis.from_url(url, decode_responses=True))

    async def send_to_queue(self, topic: str, payload: Dict[str, Any]) -> bool:
        """Never raises: a lost event is logged, the request carries on."""
        try:
            await self._r.rpush(queue_key(topic), json.dumps(payload, default=str))
            return True
        except Exception as e:
            logger.warning(f"[queue] send to {topic} failed: {e}")
            return False

    async def is_healthy(self) -> bool:
        try:
            return bool(await self._r.ping())
        except Exception as e:
            logger.warning(f"[queue] redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._r.aclose()


class NullMessageQueue:
    """Used when no broker is configured; events are dropped."""

    async def send_to_queue(self, topic: str, payload: Dict[str, Any]) -> bool:
        logger.debug(f"[queue] no broker configured, dropping {payload.get('event')} on {topic}")
        return False

    async def is_healthy(self) -> bool:
        return True

    async def close(self) -> None:
        return None


def build_queue(url: Optional[str] = settings.REDIS_URL) -> MessageQueue:
    if url:
        return RedisMessageQueue.from_url(url)
    return NullMessageQueue()

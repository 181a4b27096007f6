"""Versioned metadata stored on every chat message row.

Serialized with camelCase keys; ``vectorChunkIds``, ``vectorChunkCount``,
``chunked`` and ``imageCount`` are read by the repair/debug tooling.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SCHEMA_VERSION = 2

# misspelled key written by early builds; read for migration, never written
LEGACY_CONVERSATION_KEY = "coversationId"


class MessageMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_version: int = Field(SCHEMA_VERSION, alias="schemaVersion")
    message_id: str = Field(alias="messageId")
    conversation_id: str = Field(alias="conversationId")
    user_id: Optional[str] = Field(None, alias="userId")
    role: Literal["user", "assistant"]
    timestamp: int  # epoch milliseconds
    chunk_index: int = Field(0, alias="chunkIndex")
    image_count: int = Field(0, alias="imageCount")
    image_descriptions: List[str] = Field(default_factory=list, alias="imageDescriptions")
    vector_chunk_ids: List[str] = Field(default_factory=list, alias="vectorChunkIds")
    vector_chunk_count: int = Field(0, alias="vectorChunkCount")
    chunked: bool = False

    # assistant rows only
    system_prompt_length: Optional[int] = Field(None, alias="systemPromptLength")
    response_length: Optional[int] = Field(None, alias="responseLength")
    used_fallback: Optional[bool] = Field(None, alias="usedFallback")
    model: Optional[str] = None

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def linkage_fields(chunk_ids: List[str], chunked: bool) -> Dict[str, Any]:
    """The metadata keys written once vector documents exist for a message."""
    return {
        "vectorChunkIds": list(chunk_ids),
        "vectorChunkCount": len(chunk_ids),
        "chunked": chunked,
    }


def migrate_metadata(
    raw: Optional[Dict[str, Any]],
    *,
    message_id: str,
    conversation_id: str,
    role: str,
    timestamp: int,
) -> MessageMetadata:
    """Upgrade any stored metadata bag to the current schema.

    Handles the legacy nested shape ``{"id", "metadata": {...}, "pageContent"}``
    and the misspelled conversation key. Row values fill whatever the bag lacks.
    """
    raw = dict(raw or {})
    if raw.get("schemaVersion") == SCHEMA_VERSION:
        return MessageMetadata.model_validate(raw)

    inner = raw.get("metadata")
    flat: Dict[str, Any] = dict(inner) if isinstance(inner, dict) else dict(raw)

    legacy_conv = flat.pop(LEGACY_CONVERSATION_KEY, None)
    flat.setdefault("conversationId", legacy_conv or conversation_id)
    flat["messageId"] = flat.get("messageId") or flat.get("id") or raw.get("id") or message_id
    flat.setdefault("role", role)
    flat.setdefault("timestamp", timestamp)

    chunk_ids = flat.get("vectorChunkIds") or []
    flat["vectorChunkIds"] = chunk_ids
    flat.setdefault("vectorChunkCount", len(chunk_ids))
    flat.setdefault("chunked", len(chunk_ids) > 1)
    flat["schemaVersion"] = SCHEMA_VERSION
    return MessageMetadata.model_validate(flat)

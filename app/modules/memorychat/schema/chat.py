from pydantic import BaseModel, Field, model_validator
from typing import List, Optional, Dict, Any


class ChatRequest(BaseModel):
    text: Optional[str] = None
    msg: Optional[str] = None
    message: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_content(self):
        if not self.content and not self.images:
            raise ValueError("one of text, msg or message (or images) is required")
        return self

    @property
    def content(self) -> str:
        return (self.text or self.msg or self.message or "").strip()


class ChatError(BaseModel):
    step: str
    type: str
    message: str
    duration_ms: int
    timestamp: int  # epoch ms


class ChatResponse(BaseModel):
    status: str  # 'ok' | 'degraded'
    response: str
    conversation_id: str
    request_id: str
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    used_fallback: bool = False
    model: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    context: Dict[str, int] = Field(default_factory=dict)
    elapsed_ms: int
    error: Optional[ChatError] = None


class ImageOut(BaseModel):
    url: str
    type: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    description: Optional[str] = None


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    role: str
    content: str
    created_at: int  # epoch ms
    has_images: bool = False
    images: List[ImageOut] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationMessages(BaseModel):
    conversation_id: str
    messages: List[MessageOut]


class ConversationOut(BaseModel):
    id: str
    title: str
    created_at: int  # epoch ms
    updated_at: int  # epoch ms


class ConversationList(BaseModel):
    user_id: str
    conversations: List[ConversationOut]


class SearchResultOut(BaseModel):
    id: str
    role: str
    text: str
    score: Optional[float] = None
    timestamp: int
    message_id: str
    chunk_index: int


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResultOut]


class PurgeResponse(BaseModel):
    conversation_id: str
    messages: int
    images: int
    vectors: int
    dry_run: bool = False

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from app.modules.memorychat.maintenance import purge_conversation
from app.modules.memorychat.schema.chat import (
    ChatRequest,
    ChatResponse,
    ConversationList,
    ConversationMessages,
    ConversationOut,
    ImageOut,
    MessageOut,
    PurgeResponse,
    SearchResponse,
    SearchResultOut,
)
from app.modules.memorychat.services.chat_service import ChatService
from app.modules.memorychat.services.errors import ChatPipelineError, ConversationAccessError, FailureStep
from app.modules.memorychat.services.request_context import RequestContext
from app.services.memory.models import ChatMessage, epoch_ms
from core.config import get_chat_service, settings

logger = logging.getLogger(__name__)

v1 = APIRouter(prefix="/api/v1", tags=["Memory Chat"])
health = APIRouter(tags=["Health"])


def _context(user_id: Optional[str], conversation_id: Optional[str]) -> RequestContext:
    try:
        return RequestContext(
            user_id=(user_id or settings.DEFAULT_USER_ID).strip(),
            conversation_id=(conversation_id or settings.DEFAULT_CONVERSATION_ID).strip(),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _forbidden(e: ConversationAccessError) -> HTTPException:
    return HTTPException(status_code=403, detail=str(e))


def _message_out(msg: ChatMessage, with_images: bool = False) -> MessageOut:
    images = []
    if with_images:
        images = [
            ImageOut(
                url=img.image_url,
                type=img.image_type,
                mime_type=img.mime_type,
                size=img.size,
                description=(img.meta or {}).get("description"),
            )
            for img in msg.images
        ]
    return MessageOut(
        id=msg.id,
        conversation_id=msg.conversation_id,
        role=msg.role,
        content=msg.content,
        created_at=epoch_ms(msg.created_at),
        has_images=bool(msg.has_images),
        images=images,
        metadata=msg.meta or {},
    )


@v1.post("/chat", response_model=ChatResponse)
async def chat(
    req: ChatRequest,
    x_user_id: Optional[str] = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    ctx = _context(x_user_id, req.conversation_id)
    try:
        result = await service.respond(ctx, req.content, req.images or None)
    except ConversationAccessError as e:
        raise _forbidden(e)
    body = ChatResponse(
        status=result.status,
        response=result.response,
        conversation_id=result.conversation_id,
        request_id=result.request_id,
        user_message_id=result.user_message_id,
        assistant_message_id=result.assistant_message_id,
        used_fallback=result.used_fallback,
        model=result.model,
        image_urls=result.image_urls,
        context=result.context,
        elapsed_ms=result.elapsed_ms,
        error=result.error,
    )
    if not result.degraded:
        return body

    logger.warning(f"[api] degraded response for {ctx.tag}: {result.error}")
    status = 200
    if not result.response:
        status = 400 if result.error and result.error["step"] == FailureStep.IMAGE_PROCESSING.value else 503
    return JSONResponse(status_code=status, content=body.model_dump())


@v1.get("/conversations", response_model=ConversationList)
async def conversations(
    limit: int = Query(20, ge=1, le=200),
    x_user_id: Optional[str] = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    user_id = (x_user_id or settings.DEFAULT_USER_ID).strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id must be non-empty")
    rows = await service.conversations(user_id, limit=limit)
    return ConversationList(
        user_id=user_id,
        conversations=[
            ConversationOut(
                id=c.id,
                title=c.title,
                created_at=epoch_ms(c.created_at),
                updated_at=epoch_ms(c.updated_at),
            )
            for c in rows
        ],
    )


@v1.get("/conversations/{conversation_id}/messages", response_model=ConversationMessages)
async def conversation_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=1000),
    x_user_id: Optional[str] = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    ctx = _context(x_user_id, conversation_id)
    try:
        rows = await service.conversation_messages(ctx, limit=limit)
    except ConversationAccessError as e:
        raise _forbidden(e)
    return ConversationMessages(conversation_id=conversation_id, messages=[_message_out(m) for m in rows])


@v1.get("/messages/{message_id}", response_model=MessageOut)
async def get_message(
    message_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    msg = await service.message(message_id, user_id=(x_user_id or settings.DEFAULT_USER_ID).strip())
    if msg is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return _message_out(msg, with_images=True)


@v1.get("/search", response_model=SearchResponse)
async def search(
    q: str = Query(..., min_length=1),
    conversation_id: Optional[str] = Query(None),
    top_k: int = Query(settings.SEMANTIC_TOP_K, ge=1, le=50),
    x_user_id: Optional[str] = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    ctx = _context(x_user_id, conversation_id)
    try:
        hits = await service.search(ctx, q, top_k)
    except ChatPipelineError as e:
        logger.error(f"[api] search failed for {ctx.tag}: {e}")
        raise HTTPException(status_code=503, detail={"step": e.step.value, "type": e.error_type, "message": str(e.cause)})
    return SearchResponse(
        query=q,
        results=[
            SearchResultOut(
                id=h.id,
                role=h.role,
                text=h.original_text,
                score=h.score,
                timestamp=h.timestamp,
                message_id=h.message_id,
                chunk_index=h.chunk_index,
            )
            for h in hits
        ],
    )


@v1.delete("/conversations/{conversation_id}", response_model=PurgeResponse)
async def delete_conversation(
    conversation_id: str,
    dry_run: bool = Query(False),
    x_user_id: Optional[str] = Header(default=None),
    service: ChatService = Depends(get_chat_service),
):
    try:
        await service.authorize(_context(x_user_id, conversation_id))
    except ConversationAccessError as e:
        raise _forbidden(e)
    report = await purge_conversation(service.sessions, service.vector_store, conversation_id, dry_run=dry_run)
    return PurgeResponse(
        conversation_id=report.conversation_id,
        messages=report.messages,
        images=report.images,
        vectors=report.vectors,
        dry_run=report.dry_run,
    )


@health.get("/health/queue")
async def queue_health(service: ChatService = Depends(get_chat_service)):
    healthy = await service.queue.is_healthy()
    return JSONResponse(status_code=200 if healthy else 503, content={"status": "ok" if healthy else "unavailable"})

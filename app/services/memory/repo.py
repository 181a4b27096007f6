from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import ChatMessage, Conversation, MessageImage, utcnow

TITLE_MAX_CHARS = 60


def _title_from(text: str | None) -> str:
    t = " ".join((text or "").split())
    if not t:
        return "New chat"
    return t if len(t) <= TITLE_MAX_CHARS else t[: TITLE_MAX_CHARS - 3] + "..."


async def ensure_conversation(
    db: AsyncSession, user_id: str, conversation_id: str, first_message: Optional[str] = None
) -> Conversation:
    """Get the (user, conversation) record, creating it on first use."""
    row = await db.get(Conversation, conversation_id)
    if row:
        return row
    conv = Conversation(id=conversation_id, user_id=user_id, title=_title_from(first_message))
    db.add(conv)
    await db.flush()
    return conv


async def conversation_owner(db: AsyncSession, conversation_id: str) -> Optional[str]:
    """User ID owning the conversation, or None if it does not exist yet."""
    return await db.scalar(select(Conversation.user_id).where(Conversation.id == conversation_id))


async def touch_conversation(db: AsyncSession, conversation_id: str) -> None:
    await db.execute(update(Conversation).where(Conversation.id == conversation_id).values(updated_at=utcnow()))


async def message_exists(db: AsyncSession, message_id: str, conversation_id: str, role: str) -> bool:
    q = select(ChatMessage.id).where(
        ChatMessage.id == message_id,
        ChatMessage.conversation_id == conversation_id,
        ChatMessage.role == role,
    )
    res = await db.execute(q)
    return res.first() is not None


async def add_message(
    db: AsyncSession,
    conversation_id: str,
    role: str,
    content: str,
    *,
    message_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
    has_images: bool = False,
    full_prompt: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> ChatMessage:
    msg = ChatMessage(
        conversation_id=conversation_id,
        role=role,
        content=content,
        has_images=has_images,
        full_prompt=full_prompt,
        meta=meta or {},
    )
    if message_id:
        msg.id = message_id
    if created_at:
        msg.created_at = created_at
    db.add(msg)
    await db.flush()
    return msg


async def add_images(db: AsyncSession, message_id: str, images: Sequence[Dict[str, Any]]) -> List[MessageImage]:
    rows = [
        MessageImage(
            message_id=message_id,
            position=img.get("position", i),
            image_url=img["image_url"],
            image_type=img.get("image_type", "upload"),
            mime_type=img.get("mime_type"),
            size=img.get("size"),
            meta=img.get("meta") or {},
        )
        for i, img in enumerate(images)
    ]
    db.add_all(rows)
    await db.flush()
    return rows


async def update_message_meta(db: AsyncSession, message_id: str, changes: Dict[str, Any]) -> Optional[ChatMessage]:
    """Merge ``changes`` into the stored metadata bag, preserving other keys."""
    msg = await db.get(ChatMessage, message_id)
    if msg is None:
        return None
    # reassign so the JSON column is flagged dirty
    msg.meta = {**(msg.meta or {}), **changes}
    await db.flush()
    return msg


async def get_message(db: AsyncSession, message_id: str, with_images: bool = False) -> Optional[ChatMessage]:
    q = select(ChatMessage).where(ChatMessage.id == message_id)
    if with_images:
        q = q.options(selectinload(ChatMessage.images))
    res = await db.execute(q)
    return res.scalar_one_or_none()


async def last_messages(db: AsyncSession, conversation_id: str, limit: int = 10) -> List[ChatMessage]:
    """Last ``limit`` messages of a conversation in chronological order."""
    q = (
        select(ChatMessage)
        .where(ChatMessage.conversation_id == conversation_id)
        .order_by(ChatMessage.created_at.desc())
        .limit(limit)
    )
    res = await db.execute(q)
    return list(reversed(res.scalars().all()))


async def messages_for(
    db: AsyncSession,
    conversation_id: str,
    *,
    role: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
) -> List[ChatMessage]:
    q = select(ChatMessage).where(ChatMessage.conversation_id == conversation_id)
    if role:
        q = q.where(ChatMessage.role == role)
    if since:
        q = q.where(ChatMessage.created_at >= since)
    q = q.order_by(ChatMessage.created_at.asc()).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def latest_assistant_message(db: AsyncSession, conversation_id: str) -> Optional[ChatMessage]:
    q = (
        select(ChatMessage)
        .where(ChatMessage.conversation_id == conversation_id, ChatMessage.role == "assistant")
        .order_by(ChatMessage.created_at.desc())
        .limit(1)
    )
    res = await db.execute(q)
    return res.scalar_one_or_none()


async def list_conversations(db: AsyncSession, user_id: str, limit: int = 20) -> List[Conversation]:
    q = select(Conversation).where(Conversation.user_id == user_id).order_by(Conversation.updated_at.desc()).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def all_messages(db: AsyncSession, batch_size: int = 500, offset: int = 0) -> List[ChatMessage]:
    q = select(ChatMessage).order_by(ChatMessage.created_at.asc()).offset(offset).limit(batch_size)
    res = await db.execute(q)
    return list(res.scalars().all())


async def conversation_counts(db: AsyncSession, conversation_id: str) -> tuple[int, int]:
    """(messages, images) stored for a conversation."""
    ids = select(ChatMessage.id).where(ChatMessage.conversation_id == conversation_id)
    messages = await db.scalar(select(func.count()).select_from(ChatMessage).where(ChatMessage.conversation_id == conversation_id))
    images = await db.scalar(select(func.count()).select_from(MessageImage).where(MessageImage.message_id.in_(ids)))
    return messages or 0, images or 0


async def delete_conversation_messages(db: AsyncSession, conversation_id: str) -> tuple[int, int]:
    """Delete images and messages of a conversation; returns (messages, images)."""
    ids = select(ChatMessage.id).where(ChatMessage.conversation_id == conversation_id)
    images = await db.execute(
        delete(MessageImage).where(MessageImage.message_id.in_(ids)).execution_options(synchronize_session=False)
    )
    messages = await db.execute(
        delete(ChatMessage)
        .where(ChatMessage.conversation_id == conversation_id)
        .execution_options(synchronize_session=False)
    )
    return messages.rowcount or 0, images.rowcount or 0


async def delete_conversation(db: AsyncSession, conversation_id: str) -> bool:
    res = await db.execute(
        delete(Conversation).where(Conversation.id == conversation_id).execution_options(synchronize_session=False)
    )
    return bool(res.rowcount)

"""Splitting message text into indexable chunks."""

from dataclasses import dataclass
from functools import lru_cache
from typing import List
import uuid

from langchain_text_splitters import RecursiveCharacterTextSplitter

from core.config import settings

# paragraph, then line, then sentence, then word boundaries
SEPARATORS = ["---\n\n", "\n\n", "\n", ". ", "? ", "! ", " ", ""]


@dataclass(frozen=True)
class ChunkPlan:
    chunk_id: str
    index: int
    text: str


@lru_cache(maxsize=8)
def get_splitter(chunk_size: int = settings.CHUNK_SIZE, chunk_overlap: int = settings.CHUNK_OVERLAP):
    return RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        length_function=len,
        separators=SEPARATORS,
        keep_separator="end",
    )


def is_short(text: str, chunk_size: int = settings.CHUNK_SIZE) -> bool:
    return len(text) <= chunk_size


def chunk_text(
    text: str,
    chunk_size: int = settings.CHUNK_SIZE,
    chunk_overlap: int = settings.CHUNK_OVERLAP,
) -> List[str]:
    """Split ``text``; anything up to ``chunk_size`` characters comes back untouched as one chunk."""
    if is_short(text, chunk_size):
        return [text]
    parts = get_splitter(chunk_size, chunk_overlap).split_text(text)
    return [p for p in parts if p.strip()] or [text]


def plan_chunks(
    message_id: str,
    text: str,
    chunk_size: int = settings.CHUNK_SIZE,
    chunk_overlap: int = settings.CHUNK_OVERLAP,
) -> List[ChunkPlan]:
    """Assign chunk IDs: a short message keeps its own ID, long ones get fresh UUIDs per chunk."""
    if is_short(text, chunk_size):
        return [ChunkPlan(chunk_id=message_id, index=0, text=text)]
    return [
        ChunkPlan(chunk_id=str(uuid.uuid4()), index=i, text=part)
        for i, part in enumerate(chunk_text(text, chunk_size, chunk_overlap))
    ]

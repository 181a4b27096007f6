"""Image intake for chat messages.

Accepts ``data:image/...`` URIs, ``http(s)://`` URLs or bare base64, validates
them, normalises each to a base64 data URI for the model and stores uploads
through an ``ImageStore``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import anyio
import httpx

from app.modules.memorychat.services.errors import ImageProcessingError
from core.config import settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)

DEFAULT_MIME = "image/jpeg"
_EXTENSIONS = {"image/jpeg": "jpg", "image/png": "png", "image/gif": "gif", "image/webp": "webp"}

DESCRIBE_PROMPT = "Describe this image in one short sentence. Mention any visible text."


def is_data_uri(value: str) -> bool:
    return value.startswith("data:")


def is_remote_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return DEFAULT_MIME


def to_data_uri(image: str, mime_type: Optional[str] = None) -> str:
    """Data URIs and remote URLs pass through; bare base64 gets a data URI prefix."""
    image = image.strip()
    if is_data_uri(image) or is_remote_url(image):
        return image
    return f"data:{mime_type or DEFAULT_MIME};base64,{image}"


def split_data_uri(uri: str) -> tuple[str, str]:
    """``data:<mime>;base64,<payload>`` -> (mime, payload)."""
    header, sep, payload = uri.partition(",")
    if not sep or ";base64" not in header:
        raise ImageProcessingError("image data URI must be base64 encoded")
    mime = header[len("data:"):].split(";")[0] or DEFAULT_MIME
    return mime, payload


def decode_base64(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageProcessingError(f"invalid base64 image data: {e}") from e


def enrich_text(text: str, image_count: int, descriptions: Sequence[str] = ()) -> str:
    """Text indexed for a user message that carried images."""
    if image_count <= 0:
        return text
    described = [d for d in descriptions if d]
    if not described:
        return f"{text} [contains {image_count} image(s)]"
    parts = "; ".join(f"Image {i + 1}: {d}" for i, d in enumerate(described))
    return f"{text} [contains {image_count} image(s): {parts}]"


class ImageStore(Protocol):
    async def upload(self, b64: str, mime_type: str = DEFAULT_MIME) -> str: ...


class LocalImageStore:
    """Writes uploads under ``directory``; URLs are served from ``base_url``."""

    def __init__(self, directory: str = settings.IMAGE_STORE_DIR, base_url: str = settings.IMAGE_BASE_URL):
        self.directory = anyio.Path(directory)
        self.base_url = base_url.rstrip("/")

    async def upload(self, b64: str, mime_type: str = DEFAULT_MIME) -> str:
        data = decode_base64(b64)
        name = f"{uuid.uuid4().hex}.{_EXTENSIONS.get(mime_type, 'bin')}"
        await self.directory.mkdir(parents=True, exist_ok=True)
        await (self.directory / name).write_bytes(data)
        logger.info(f"[images] stored {name} ({len(data)} bytes)")
        return f"{self.base_url}/{name}"


class ImageDescriber(Protocol):
    async def describe(self, data_uri: str) -> str: ...


class VisionDescriber:
    """One-line description per image from a multimodal chat model.

    ``model`` is anything with ``invoke(messages) -> reply.content``.
    """

    def __init__(self, model: Any, prompt: str = DESCRIBE_PROMPT):
        self.model = model
        self.prompt = prompt

    async def describe(self, data_uri: str) -> str:
        reply = await self.model.invoke(
            [
                (
                    "human",
                    [
                        {"type": "text", "text": self.prompt},
                        {"type": "image_url", "image_url": {"url": data_uri}},
                    ],
                )
            ]
        )
        return " ".join((reply.content or "").split())


@dataclass
class ProcessedImage:
    position: int
    data_uri: str
    url: str
    image_type: str  # 'upload' | 'url'
    mime_type: str
    size: int
    description: Optional[str] = None

    def as_row(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "image_url": self.url,
            "image_type": self.image_type,
            "mime_type": self.mime_type,
            "size": self.size,
            "meta": {"index": self.position, "description": self.description},
        }


@dataclass
class ProcessedImages:
    items: List[ProcessedImage] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def data_uris(self) -> List[str]:
        return [i.data_uri for i in self.items]

    @property
    def urls(self) -> List[str]:
        return [i.url for i in self.items]

    @property
    def descriptions(self) -> List[str]:
        return [i.description for i in self.items if i.description]

    @property
    def records(self) -> List[Dict[str, Any]]:
        return [i.as_row() for i in self.items]


class ImageService:
    def __init__(
        self,
        store: ImageStore,
        describer: Optional[ImageDescriber] = None,
        http: Optional[httpx.AsyncClient] = None,
        max_images: int = settings.MAX_IMAGES_PER_MESSAGE,
        max_bytes: int = settings.MAX_IMAGE_BYTES,
    ):
        self.store = store
        self.describer = describer
        self.http = http
        self.max_images = max_images
        self.max_bytes = max_bytes

    async def _fetch(self, url: str) -> tuple[str, bytes]:
        if self.http is not None:
            res = await self.http.get(url)
        else:
            async with httpx.AsyncClient(timeout=15, follow_redirects=True) as client:
                res = await client.get(url)
        res.raise_for_status()
        data = res.content
        mime = res.headers.get("content-type", "").split(";")[0].strip() or sniff_mime(data)
        return mime, data

    def _check(self, position: int, mime: str, data: bytes) -> None:
        if not data:
            raise ImageProcessingError(f"image {position + 1} is empty")
        if len(data) > self.max_bytes:
            raise ImageProcessingError(f"image {position + 1} is {len(data)} bytes, limit is {self.max_bytes}")
        if not mime.startswith("image/"):
            raise ImageProcessingError(f"image {position + 1} has unsupported type {mime}")

    async def _one(self, position: int, raw: str) -> ProcessedImage:
        raw = (raw or "").strip()
        if not raw:
            raise ImageProcessingError(f"image {position + 1} is empty")

        if is_remote_url(raw):
            try:
                mime, data = await self._fetch(raw)
            except httpx.HTTPError as e:
                raise ImageProcessingError(f"could not fetch image {position + 1}: {e}") from e
            self._check(position, mime, data)
            b64 = base64.b64encode(data).decode("ascii")
            return ProcessedImage(
                position=position,
                data_uri=f"data:{mime};base64,{b64}",
                url=raw,
                image_type="url",
                mime_type=mime,
                size=len(data),
            )

        if is_data_uri(raw):
            mime, b64 = split_data_uri(raw)
            data = decode_base64(b64)
        else:
            b64 = raw
            data = decode_base64(b64)
            mime = sniff_mime(data)
        self._check(position, mime, data)
        url = await self.store.upload(b64, mime)
        return ProcessedImage(
            position=position,
            data_uri=f"data:{mime};base64,{b64}",
            url=url,
            image_type="upload",
            mime_type=mime,
            size=len(data),
        )

    async def _describe(self, image: ProcessedImage) -> None:
        try:
            image.description = await self.describer.describe(image.data_uri) or None
        except Exception as e:
            logger.warning(f"[images] description of image {image.position + 1} failed: {e}")

    @profile_stage("image_processing")
    async def process(self, images: Optional[Sequence[str]]) -> ProcessedImages:
        """Validate, normalise and store ``images``; raises ``ImageProcessingError``."""
        if not images:
            return ProcessedImages()
        if len(images) > self.max_images:
            raise ImageProcessingError(f"{len(images)} images sent, at most {self.max_images} allowed")

        items = [await self._one(i, raw) for i, raw in enumerate(images)]
        if self.describer is not None:
            async with anyio.create_task_group() as tg:
                for item in items:
                    tg.start_soon(self._describe, item)
        logger.info(f"[images] processed {len(items)} image(s)")
        return ProcessedImages(items=items)

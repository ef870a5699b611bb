"""Turns labelled reference images plus an instruction into one multimodal request.

Part order is fixed: character references (main first), then the anchor
image, then extra style references, then the instruction text.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import httpx
from PIL import Image, UnidentifiedImageError

from ...background import run_sync
from ...errors import PermanentProviderError
from ...settings.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str


@dataclass(frozen=True, slots=True)
class ImagePart:
    data: bytes
    mime_type: str = "image/jpeg"


Part = Union[TextPart, ImagePart]


@dataclass(frozen=True, slots=True)
class CharacterReference:
    name: str
    image_url: str
    role: Optional[str] = None
    is_main: bool = False


@dataclass(slots=True)
class GenerationRequest:
    instruction: str
    characters: Sequence[CharacterReference] = ()
    anchor_url: Optional[str] = None
    style_reference_urls: Sequence[str] = ()
    aspect_ratio: str = "1:1"
    scene_recreation: bool = False
    output_size: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ImageTier:
    max_dimension: int
    quality: int


def anchor_tier() -> ImageTier:
    return ImageTier(settings.ANCHOR_MAX_DIMENSION, settings.ANCHOR_JPEG_QUALITY)


def reference_tier() -> ImageTier:
    return ImageTier(settings.REFERENCE_MAX_DIMENSION, settings.REFERENCE_JPEG_QUALITY)


def normalize_image(data: bytes, mime_type: str, tier: ImageTier) -> ImagePart:
    """Fit inside ``tier.max_dimension`` and re-encode as JPEG; keep the original bytes if that fails."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            im = im.convert("RGB")
            im.thumbnail((tier.max_dimension, tier.max_dimension), Image.LANCZOS)
            buf = io.BytesIO()
            im.save(buf, format="JPEG", quality=tier.quality, optimize=True)
        return ImagePart(buf.getvalue(), "image/jpeg")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning("image resize failed, sending original (%s): %s", mime_type, exc)
        return ImagePart(data, mime_type)


def _decode_data_url(url: str) -> tuple[bytes, str]:
    header, _, payload = url.partition(",")
    mime_type = header[5:].split(";", 1)[0] or "image/png"
    if ";base64" not in header:
        raise PermanentProviderError("only base64 data URLs are supported")
    try:
        return base64.b64decode(payload, validate=False), mime_type
    except ValueError as exc:
        raise PermanentProviderError(f"undecodable data URL: {exc}") from exc


class ImageLoader:
    """Fetches (or decodes) reference images and normalizes them to a quality tier."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, *, timeout: Optional[float] = None):
        self._client = client
        self._timeout = timeout or settings.IMAGE_FETCH_TIMEOUT

    async def fetch(self, url: str) -> tuple[bytes, str]:
        if url.startswith("data:"):
            return _decode_data_url(url)
        try:
            if self._client is not None:
                resp = await self._client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(url, follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise PermanentProviderError(f"could not fetch reference image {url}: {exc}") from exc
        mime_type = (resp.headers.get("content-type") or "image/jpeg").split(";", 1)[0]
        return resp.content, mime_type

    async def load(self, url: str, tier: ImageTier) -> ImagePart:
        data, mime_type = await self.fetch(url)
        return await run_sync(normalize_image, data, mime_type, tier)


def character_label(ref: CharacterReference) -> str:
    who = ref.name if not ref.role else f"{ref.name} ({ref.role})"
    if ref.is_main:
        return (
            f"[CHARACTER REFERENCE: {who}, THE MAIN CHARACTER]\n"
            "This image is the GLOBAL STYLE ANCHOR. Render the whole scene, background and props "
            "included, in exactly this art style (medium, line work, dimensionality, palette)."
        )
    return (
        f"[CHARACTER REFERENCE: {who}]\n"
        "Keep this character's identity and appearance exactly as shown."
    )


def anchor_label(scene_recreation: bool) -> str:
    if scene_recreation:
        return (
            "[SCENE BASE]\n"
            "This is the target image to edit in place. Keep its composition, environment "
            "and style unless the instructions say otherwise."
        )
    return (
        "[STYLE REFERENCE]\n"
        "Match the rendering style and continuity of this image. Do not copy its composition."
    )


def style_reference_label(index: int) -> str:
    return f"[ADDITIONAL VISUAL REFERENCE {index}]\nGuide for the requested changes."


def order_characters(refs: Sequence[CharacterReference]) -> list[CharacterReference]:
    # sorted() is stable, so secondaries keep their input order
    return sorted(refs, key=lambda r: not r.is_main)


async def compose_request(request: GenerationRequest, loader: ImageLoader) -> list[Part]:
    characters = order_characters(request.characters)
    standard = reference_tier()

    loads = [loader.load(ref.image_url, standard) for ref in characters]
    if request.anchor_url:
        loads.append(loader.load(request.anchor_url, anchor_tier()))
    loads.extend(loader.load(url, standard) for url in request.style_reference_urls)
    images = list(await asyncio.gather(*loads))

    parts: list[Part] = []
    for ref in characters:
        parts.append(TextPart(character_label(ref)))
        parts.append(images.pop(0))
    if request.anchor_url:
        parts.append(TextPart(anchor_label(request.scene_recreation)))
        parts.append(images.pop(0))
    for i, _ in enumerate(request.style_reference_urls, start=1):
        parts.append(TextPart(style_reference_label(i)))
        parts.append(images.pop(0))
    parts.append(TextPart(request.instruction))
    return parts


__all__ = [
    "TextPart",
    "ImagePart",
    "Part",
    "CharacterReference",
    "GenerationRequest",
    "ImageTier",
    "ImageLoader",
    "anchor_tier",
    "reference_tier",
    "normalize_image",
    "compose_request",
    "order_characters",
]

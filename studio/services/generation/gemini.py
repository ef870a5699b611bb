"""Gemini image provider built on google-genai."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ...errors import PermanentProviderError, ValidationError
from ...settings.config import settings
from .client import classify_error
from .compositor import ImagePart, Part, TextPart

logger = logging.getLogger(__name__)


def _to_genai_part(part: Part) -> types.Part:
    if isinstance(part, TextPart):
        return types.Part.from_text(text=part.text)
    return types.Part(inline_data=types.Blob(data=part.data, mime_type=part.mime_type))


def _build_config(aspect_ratio: Optional[str], output_size: Optional[str]) -> types.GenerateContentConfig:
    image_config: dict[str, Any] = {}
    if aspect_ratio:
        image_config["aspect_ratio"] = aspect_ratio
    if output_size:
        image_config["image_size"] = output_size
    kwargs: dict[str, Any] = {"response_modalities": ["IMAGE"]}
    if image_config:
        kwargs["image_config"] = types.ImageConfig(**image_config)
    return types.GenerateContentConfig(**kwargs)


def _extract_image(response: Any) -> bytes:
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            data = getattr(inline, "data", None) if inline else None
            if data:
                return data
    finish = None
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        finish = getattr(candidates[0], "finish_reason", None)
    raise PermanentProviderError(f"No image in provider response (finish_reason={finish})")


class GeminiImageProvider:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        sketch_model: Optional[str] = None,
        client: Optional[genai.Client] = None,
    ):
        key = api_key or settings.GEMINI_API_KEY
        if client is None and not key:
            raise ValidationError("GEMINI_API_KEY is not configured")
        self.client = client or genai.Client(api_key=key)
        self.model = model or settings.ILLUSTRATION_MODEL
        self.sketch_model = sketch_model or settings.SKETCH_MODEL

    async def _call(self, model: str, contents: list[types.Part], config: types.GenerateContentConfig) -> bytes:
        try:
            response = await self.client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as exc:
            logger.info("gemini %s returned %s %s", model, exc.code, exc.status)
            raise classify_error(exc) from exc
        return _extract_image(response)

    async def generate(self, parts: Sequence[Part], *, aspect_ratio: Optional[str], output_size: Optional[str]) -> bytes:
        contents = [_to_genai_part(p) for p in parts]
        return await self._call(self.model, contents, _build_config(aspect_ratio, output_size))

    async def transform(self, image: ImagePart, instruction: str, *, output_size: Optional[str]) -> bytes:
        contents = [_to_genai_part(TextPart(instruction)), _to_genai_part(image)]
        return await self._call(self.sketch_model, contents, _build_config(None, output_size))


__all__ = ["GeminiImageProvider"]

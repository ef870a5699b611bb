"""Generation client: composited requests with retry, plus sketch derivation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from ...errors import PermanentProviderError, ProviderError, StudioError, TransientProviderError
from ...settings.config import settings
from .compositor import GenerationRequest, ImageLoader, ImagePart, Part, anchor_tier, compose_request
from .prompts import SKETCH_INSTRUCTION

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

TRANSIENT_CODES = {429, 503}
TRANSIENT_MARKERS = (
    "unavailable",
    "resource_exhausted",
    "overloaded",
    "rate limit",
    "ratelimit",
    "high demand",
    "quota",
)


class ImageProvider(Protocol):
    async def generate(self, parts: Sequence[Part], *, aspect_ratio: Optional[str], output_size: Optional[str]) -> bytes: ...

    async def transform(self, image: ImagePart, instruction: str, *, output_size: Optional[str]) -> bytes: ...


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float

    def delay_for(self, attempt: int) -> float:
        """Wait before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    @classmethod
    def for_generation(cls) -> "RetryPolicy":
        return cls(settings.GENERATION_MAX_ATTEMPTS, settings.GENERATION_BASE_DELAY, settings.GENERATION_MAX_DELAY)

    @classmethod
    def for_sketch(cls) -> "RetryPolicy":
        return cls(settings.SKETCH_MAX_ATTEMPTS, settings.SKETCH_BASE_DELAY, settings.SKETCH_MAX_DELAY)


def classify_error(exc: BaseException) -> ProviderError:
    """Map a raw provider failure onto the transient / permanent split."""
    if isinstance(exc, ProviderError):
        return exc
    code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    status = str(getattr(exc, "status", "") or "")
    text = f"{status} {exc}".lower()
    if code in TRANSIENT_CODES or any(marker in text for marker in TRANSIENT_MARKERS):
        return TransientProviderError(str(exc) or status or "provider unavailable")
    return PermanentProviderError(str(exc) or exc.__class__.__name__)


async def with_retry(
    call: Callable[[], Awaitable[bytes]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    what: str = "generation",
) -> bytes:
    attempt = 0
    while True:
        try:
            return await call()
        except StudioError as exc:
            err: StudioError = exc
        except Exception as exc:  # noqa: BLE001
            err = classify_error(exc)
            err.__cause__ = exc
        if not isinstance(err, TransientProviderError):
            raise err
        attempt += 1
        if attempt >= policy.max_attempts:
            logger.error("%s failed after %d attempts: %s", what, attempt, err.message)
            raise err
        delay = policy.delay_for(attempt - 1)
        logger.warning("%s attempt %d/%d hit a transient error (%s); retrying in %.1fs",
                       what, attempt, policy.max_attempts, err.message, delay)
        await sleep(delay)


class GenerationClient:
    def __init__(
        self,
        provider: ImageProvider,
        loader: Optional[ImageLoader] = None,
        *,
        policy: Optional[RetryPolicy] = None,
        sketch_policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.provider = provider
        self.loader = loader or ImageLoader()
        self.policy = policy or RetryPolicy.for_generation()
        self.sketch_policy = sketch_policy or RetryPolicy.for_sketch()
        self._sleep = sleep

    async def generate(self, request: GenerationRequest) -> bytes:
        parts = await compose_request(request, self.loader)
        output_size = request.output_size or settings.ILLUSTRATION_OUTPUT_SIZE
        return await with_retry(
            lambda: self.provider.generate(parts, aspect_ratio=request.aspect_ratio, output_size=output_size),
            self.policy,
            sleep=self._sleep,
            what="image generation",
        )

    async def derive_sketch(self, image_url: str) -> bytes:
        """Second, independent call that turns a colored image into a pencil sketch."""
        source = await self.loader.load(image_url, anchor_tier())
        return await with_retry(
            lambda: self.provider.transform(source, SKETCH_INSTRUCTION, output_size=settings.SKETCH_OUTPUT_SIZE),
            self.sketch_policy,
            sleep=self._sleep,
            what="sketch derivation",
        )


__all__ = [
    "ImageProvider",
    "RetryPolicy",
    "GenerationClient",
    "classify_error",
    "with_retry",
]

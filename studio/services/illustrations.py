"""Page illustration generation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..artifacts import Artifact, Failed, is_ready, ready_url
from ..database import commit
from ..errors import ConflictError, ProviderError, TransitionError, ValidationError
from ..models import ComparisonDraft, Page, Project, ProjectStatus, ReviewTarget
from . import comparison, sketches
from .feedback import find_record
from .generation.client import GenerationClient
from .generation.compositor import CharacterReference, GenerationRequest
from .generation.prompts import MAIN_CHARACTER_PLACEHOLDER, edit_instruction, page_instruction
from .storage import BlobStore, ProjectBucketsStrategy
from .workflow import load_project, mark_regenerated

logger = logging.getLogger(__name__)

PATHS = ProjectBucketsStrategy()

# book trim size -> closest supported generation aspect ratio
ASPECT_RATIOS = {
    "8:10": "4:5",
    "8.5:8.5": "1:1",
    "8.5:11": "3:4",
}
DEFAULT_ASPECT_RATIO = "1:1"

ILLUSTRATION_STATUSES = frozenset({
    ProjectStatus.characters_approved,
    ProjectStatus.illustration_review,
    ProjectStatus.illustration_revision_needed,
})


def map_aspect_ratio(value: Optional[str]) -> str:
    return ASPECT_RATIOS.get((value or "").strip(), DEFAULT_ASPECT_RATIO)


@dataclass(slots=True)
class IllustrationResult:
    page: Page
    url: str
    draft: Optional[ComparisonDraft] = None
    sketch: Optional[Artifact] = None


def character_references(project: Project, page: Page) -> list[CharacterReference]:
    """Characters with images; the main one always, others only where the page features them (if it says)."""
    featured = {c.id for c in page.characters}
    refs = []
    for c in project.characters:
        url = ready_url(c.image)
        if not url:
            continue
        if not c.is_main and featured and c.id not in featured:
            continue
        name = MAIN_CHARACTER_PLACEHOLDER if c.is_main else (c.name or c.role or f"Character {c.id}")
        refs.append(CharacterReference(name=name, image_url=url, role=c.role, is_main=c.is_main))
    return refs


def pick_anchor(project: Project, page: Page, override: Optional[str] = None) -> Optional[str]:
    """Explicit override, else page 1 for later pages, else the main character."""
    if override:
        return override
    if page.page_number > 1:
        first = next((p for p in project.pages if p.page_number == 1), None)
        if first is not None and is_ready(first.illustration):
            return ready_url(first.illustration)
    main = project.main_character
    return ready_url(main.image) if main is not None else None


def build_page_request(
    project: Project,
    page: Page,
    *,
    custom_prompt: Optional[str] = None,
    current_image_url: Optional[str] = None,
    reference_urls: Sequence[str] = (),
    anchor_override: Optional[str] = None,
) -> GenerationRequest:
    aspect_ratio = map_aspect_ratio(project.illustration_aspect_ratio)
    if current_image_url and ((custom_prompt or "").strip() or reference_urls):
        # edit in place: the current image is the scene base, uploads only guide the change
        return GenerationRequest(
            instruction=edit_instruction(custom_prompt or "Apply the changes shown in the visual references."),
            anchor_url=current_image_url,
            style_reference_urls=list(reference_urls),
            aspect_ratio=aspect_ratio,
            scene_recreation=True,
        )

    anchor = pick_anchor(project, page, anchor_override)
    main = project.main_character
    return GenerationRequest(
        instruction=page_instruction(
            page.scene_description,
            page.story_text,
            main_name=main.name if main is not None else None,
            anchored=anchor is not None,
        ),
        characters=character_references(project, page),
        anchor_url=anchor,
        style_reference_urls=list(reference_urls),
        aspect_ratio=aspect_ratio,
    )


async def generate_page_illustration(
    db: AsyncSession,
    client: GenerationClient,
    store: BlobStore,
    project_id: int,
    page_id: int,
    *,
    custom_prompt: Optional[str] = None,
    current_image_url: Optional[str] = None,
    reference_urls: Sequence[str] = (),
    anchor_override: Optional[str] = None,
) -> IllustrationResult:
    project = await load_project(db, project_id)
    if project.status not in ILLUSTRATION_STATUSES:
        raise TransitionError("Illustrations can be generated once the characters are approved")
    page = find_record(project, "page", page_id)
    if await comparison.pending_draft(db, page) is not None:
        raise ConflictError(f"{page.label} already has a comparison waiting for a decision")

    request = build_page_request(
        project,
        page,
        custom_prompt=custom_prompt,
        current_image_url=current_image_url,
        reference_urls=reference_urls,
        anchor_override=anchor_override,
    )
    try:
        data = await client.generate(request)
    except ProviderError as exc:
        if not is_ready(page.illustration):
            page.illustration = Failed(exc.message)
            await commit(db)
        raise

    url = await store.put(PATHS.page_path(project.id, page.page_number, "illustration"), data, "image/png")
    outcome = await comparison.stage_artifact(db, project, page, url)
    if outcome.committed:
        mark_regenerated(project, ReviewTarget.illustrations)
    await commit(db)
    logger.info("project %s %s: new illustration (%s)", project.id, page.label,
                "committed" if outcome.committed else "awaiting comparison")

    result = IllustrationResult(page, url, outcome.draft)
    if outcome.committed:
        result.sketch = await sketches.derive_sketch(db, client, store, page)
    return result


async def upload_reference(db: AsyncSession, store: BlobStore, project_id: int, data: bytes, content_type: str) -> str:
    """Store a style reference for edit-mode regenerations and return its URL."""
    if not (content_type or "").startswith("image/"):
        raise ValidationError("Reference images must be images")
    if not data:
        raise ValidationError("The uploaded file is empty")
    project = await load_project(db, project_id)
    ext = (content_type.split("/", 1)[1] or "jpg").split("+", 1)[0]
    url = await store.put(PATHS.reference_path(project.id, ext), data, content_type)
    logger.info("project %s: stored reference %s", project.id, url)
    return url


__all__ = [
    "ASPECT_RATIOS",
    "IllustrationResult",
    "map_aspect_ratio",
    "character_references",
    "pick_anchor",
    "build_page_request",
    "generate_page_illustration",
    "upload_reference",
]

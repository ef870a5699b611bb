# studio/routers/admin.py
from typing import Literal

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..artifacts import to_payload
from ..database import get_db
from ..deps import get_blob_store, get_generation_client, get_notifier, get_session_maker
from ..errors import NotFoundError, ValidationError
from ..jobs import JOBS
from ..models import ComparisonTargetKind
from ..schemas import (
    ActionIn, BatchResultRead, CharacterRead, ComparisonDecisionIn, ComparisonRead, GenerateCharactersIn,
    GenerateIllustrationIn, IllustrationResultRead, JobRead, PageRead, ProjectCreate, ProjectRead,
    SendResultRead, StageResultRead,
)
from ..services import characters as character_service
from ..services import comparison, feedback, illustrations, sketches, workflow
from ..services.generation.client import GenerationClient
from ..services.notifications import Notifier
from ..services.storage import BlobStore

router = APIRouter(prefix="/api/admin", tags=["admin"])

RecordPath = Literal["pages", "characters"]
ACTIONS = {"reply", "resolve", "comment", "remove-comment", "edit-last"}


def _kind(path: RecordPath) -> ComparisonTargetKind:
    return ComparisonTargetKind.page if path == "pages" else ComparisonTargetKind.character


def _record_read(record):
    if record.kind == ComparisonTargetKind.page:
        return PageRead.model_validate(record)
    return CharacterRead.model_validate(record)


# =========================
# PROJECTS
# =========================
@router.post("/projects", response_model=ProjectRead, status_code=201)
async def api_create_project(body: ProjectCreate, db: AsyncSession = Depends(get_db)):
    data = body.model_dump(exclude={"pages", "characters"})
    project = await workflow.create_project(
        db,
        **data,
        pages=[p.model_dump() for p in body.pages],
        characters=[c.model_dump() for c in body.characters],
    )
    return project


@router.get("/projects/{project_id}", response_model=ProjectRead)
async def api_get_project(project_id: int, db: AsyncSession = Depends(get_db)):
    return await workflow.load_project(db, project_id)


@router.post("/projects/{project_id}/send", response_model=SendResultRead)
async def api_send(
    project_id: int,
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    result = await workflow.send_to_customer(db, project_id, notifier=notifier)
    return SendResultRead(
        status=result.project.status,
        target=result.target.value,
        notification=result.plan.kind.value,
        send_count=result.plan.new_count,
        round_number=result.plan.round_number,
        resolved=result.resolved,
    )


@router.post("/projects/{project_id}/review-token/reset", response_model=ProjectRead)
async def api_reset_token(project_id: int, db: AsyncSession = Depends(get_db)):
    return await workflow.reset_review_token(db, project_id)


@router.post("/projects/{project_id}/illustrations/reset", response_model=ProjectRead)
async def api_reset_illustrations(project_id: int, db: AsyncSession = Depends(get_db)):
    return await workflow.reset_illustrations(db, project_id)


@router.post("/projects/{project_id}/illustrations/approve", response_model=ProjectRead)
async def api_manual_approve(project_id: int, db: AsyncSession = Depends(get_db)):
    return await workflow.manual_approve_illustrations(db, project_id)


# =========================
# CHARACTERS
# =========================
@router.post("/projects/{project_id}/characters/generation/start", response_model=JobRead, status_code=202)
async def api_start_generation(
    project_id: int,
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    job = await character_service.begin_generation(db, client, store, project_id, session_maker=session_maker)
    return JobRead.model_validate(job)


@router.post("/projects/{project_id}/characters/generate")
async def api_generate_characters(
    project_id: int,
    body: GenerateCharactersIn,
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    if body.background:
        project = await workflow.load_project(db, project_id)
        job = character_service.launch_generation_job(
            client, store, project, character_ids=body.character_ids, session_maker=session_maker,
        )
        return JobRead.model_validate(job)
    batch = await character_service.generate_characters(
        db, client, store, project_id, character_ids=body.character_ids, session_maker=session_maker,
    )
    project = await workflow.load_project(db, project_id)
    return BatchResultRead(
        generated=batch.generated,
        failed=batch.failed,
        cancelled=batch.cancelled,
        advanced=batch.advanced,
        status=project.status,
        items=[i.as_dict() for i in batch.items],
    )


@router.post("/projects/{project_id}/characters/{character_id}/generate")
async def api_generate_character(
    project_id: int,
    character_id: int,
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
):
    result = await character_service.generate_character(db, client, store, project_id, character_id)
    return result.as_dict()


@router.delete("/projects/{project_id}/characters/{character_id}", status_code=204)
async def api_delete_character(
    project_id: int,
    character_id: int,
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    await character_service.delete_character(db, store, project_id, character_id)


# =========================
# JOBS
# =========================
@router.get("/jobs/{job_id}", response_model=JobRead)
async def api_job(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise NotFoundError(f"Job {job_id} not found")
    return JobRead.model_validate(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobRead)
async def api_job_cancel(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise NotFoundError(f"Job {job_id} not found")
    JOBS.cancel(job_id)
    return JobRead.model_validate(job)


# =========================
# ILLUSTRATIONS / UPLOADS / COMPARISONS
# =========================
@router.post("/projects/{project_id}/pages/{page_id}/illustration", response_model=IllustrationResultRead)
async def api_generate_illustration(
    project_id: int,
    page_id: int,
    body: GenerateIllustrationIn,
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
):
    result = await illustrations.generate_page_illustration(
        db, client, store, project_id, page_id,
        custom_prompt=body.custom_prompt,
        current_image_url=body.current_image_url,
        reference_urls=body.reference_urls,
        anchor_override=body.anchor_url,
    )
    return IllustrationResultRead(
        page=PageRead.model_validate(result.page),
        url=result.url,
        comparison=ComparisonRead.model_validate(result.draft) if result.draft is not None else None,
        sketch=result.sketch,
    )


@router.post("/projects/{project_id}/pages/{page_id}/reset-to-original")
async def api_reset_to_original(
    project_id: int,
    page_id: int,
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    outcome = await comparison.reset_to_original(db, store, project_id, page_id)
    if outcome.needs_sketch:
        sketches.schedule_sketch(client, store, ComparisonTargetKind.page, page_id, session_maker=session_maker)
    return {"restored": outcome.restored, "page": PageRead.model_validate(outcome.page)}


@router.post("/projects/{project_id}/references", status_code=201)
async def api_upload_reference(
    project_id: int,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    data = await file.read()
    url = await illustrations.upload_reference(db, store, project_id, data, file.content_type or "")
    return {"url": url}


@router.post("/projects/{project_id}/{records}/{record_id}/upload", response_model=StageResultRead)
async def api_upload(
    project_id: int,
    records: RecordPath,
    record_id: int,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    data = await file.read()
    kind = _kind(records)
    outcome = await comparison.upload_artifact(db, store, project_id, kind, record_id, data, file.content_type or "")
    if outcome.committed:
        sketches.schedule_sketch(client, store, kind, record_id, session_maker=session_maker)
    return StageResultRead(
        url=outcome.url,
        committed=outcome.committed,
        comparison=ComparisonRead.model_validate(outcome.draft) if outcome.draft is not None else None,
    )


@router.post("/projects/{project_id}/comparisons/{comparison_id}")
async def api_decide(
    project_id: int,
    comparison_id: int,
    body: ComparisonDecisionIn,
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
    session_maker: async_sessionmaker = Depends(get_session_maker),
):
    outcome = await comparison.decide(db, store, project_id, comparison_id, body.decision)
    if outcome.needs_sketch:
        sketches.schedule_sketch(client, store, outcome.record.kind, outcome.record.id, session_maker=session_maker)
    return {"decision": outcome.decision.value, "record": _record_read(outcome.record)}


@router.post("/projects/{project_id}/{records}/{record_id}/sketch")
async def api_retry_sketch(
    project_id: int,
    records: RecordPath,
    record_id: int,
    db: AsyncSession = Depends(get_db),
    client: GenerationClient = Depends(get_generation_client),
    store: BlobStore = Depends(get_blob_store),
):
    artifact = await sketches.retry_sketch(db, client, store, _kind(records), record_id, project_id=project_id)
    return {"sketch": to_payload(artifact)}


# =========================
# FEEDBACK (admin side)
# =========================
@router.post("/projects/{project_id}/{records}/{record_id}/{action}")
async def api_admin_action(
    project_id: int,
    records: RecordPath,
    record_id: int,
    action: str,
    body: ActionIn,
    db: AsyncSession = Depends(get_db),
):
    if action not in ACTIONS:
        raise ValidationError(f"Unknown action {action!r}")
    record = await feedback.admin_action(
        db, project_id, _kind(records).value, record_id, action.replace("-", "_"),
        expected_version=body.expected_version, text=body.text,
    )
    return _record_read(record)

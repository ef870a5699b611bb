"""Project lifecycle: intake, sends, customer decisions and resets."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from studio.artifacts import Failed, Ready
from studio.background import drain
from studio.errors import ConflictError, NotFoundError, PersistenceError, TransitionError, ValidationError
from studio.jobs import JOBS
from studio.models import ComparisonDraft, ComparisonTargetKind, Project, ProjectStatus, ReviewTarget
from studio.services import feedback, workflow
from studio.services.staging import NotificationKind

S = ProjectStatus


async def test_create_project_opens_round_zero_for_both_targets(make_project):
    project = await make_project()
    assert project.status == S.draft
    assert sorted((r.target.value, r.number) for r in project.rounds) == [("characters", 0), ("illustrations", 0)]
    assert [p.page_number for p in project.pages] == [1, 2]
    assert project.main_character.name == "Milo"
    assert project.review_token is None


async def test_only_one_main_character(db):
    with pytest.raises(ValidationError):
        await workflow.create_project(db, characters=[{"name": "A", "is_main": True}, {"name": "B", "is_main": True}])


async def test_duplicate_page_numbers_rejected(db):
    with pytest.raises(ValidationError):
        await workflow.create_project(db, pages=[{"page_number": 2}, {"page_number": 2}])


def test_transition_table_guards_moves():
    assert workflow.can_transition(S.draft, S.character_review)
    assert not workflow.can_transition(S.draft, S.completed)
    assert workflow.can_transition(S.illustration_review, S.illustration_review)
    assert not workflow.can_transition(S.completed, S.completed)


async def test_first_send_without_imagery(db, make_project, notifier):
    project = await make_project()
    result = await workflow.send_to_customer(db, project.id, notifier=notifier)
    await drain()

    assert result.plan.kind is NotificationKind.initial
    assert project.character_send_count == 0
    assert project.status == S.character_review
    assert project.review_token
    (intent,) = notifier.sent
    assert intent.recipient == "ada@example.com"
    assert intent.variables["review_url"] == f"http://studio.test/review/{project.review_token}"
    assert intent.variables["author_name"] == "Ada Lovelace"


async def _draw(db, character, name="fox"):
    character.image = Ready(f"http://studio.test/static/uploads/{name}.png")
    await db.commit()


async def test_main_character_alone_is_not_a_batch(db, make_project, give_main_image, notifier):
    project = await give_main_image(await make_project())
    result = await workflow.send_to_customer(db, project.id, notifier=notifier)

    assert result.plan.kind is NotificationKind.initial
    assert project.character_send_count == 0
    assert project.main_character.customer_image_url == "http://studio.test/static/uploads/main.png"
    assert max(r.number for r in project.rounds if r.target == ReviewTarget.characters) == 0


async def test_send_with_secondary_imagery_advances_counter(db, make_project, give_main_image, notifier):
    project = await give_main_image(await make_project())
    await _draw(db, project.characters[1])
    result = await workflow.send_to_customer(db, project.id, notifier=notifier)

    assert result.plan.kind is NotificationKind.first_batch_ready
    assert project.character_send_count == 1
    assert project.characters[1].customer_image_url == "http://studio.test/static/uploads/fox.png"
    assert max(r.number for r in project.rounds if r.target == ReviewTarget.characters) == 1


async def test_resend_resolves_open_notes_and_opens_revision_round(db, make_project, give_main_image, notifier):
    project = await give_main_image(await make_project())
    await _draw(db, project.characters[1])
    await workflow.send_to_customer(db, project.id)
    token = project.review_token
    main = project.main_character

    await feedback.customer_action(db, token, "character", main.id, "submit", expected_version=0, text="rounder face")
    workflow.transition(project, S.characters_regenerated)
    await db.commit()

    result = await workflow.send_to_customer(db, project.id, notifier=notifier)
    await drain()
    assert result.resolved == 1
    assert result.plan.kind is NotificationKind.revision_round
    assert result.plan.round_number == 1
    assert project.character_send_count == 2
    assert main.feedback_notes is None and main.is_resolved
    assert main.feedback_history[0]["revision_round"] == 1
    assert notifier.sent[-1].variables["round_number"] == 1


async def test_resend_leaves_notes_on_undrawn_characters_open(db, make_project, give_main_image):
    project = await give_main_image(await make_project())
    fox, owl = project.characters[1], project.characters[2]
    await _draw(db, fox)
    await workflow.send_to_customer(db, project.id)
    token = project.review_token

    await feedback.customer_action(db, token, "character", fox.id, "submit", expected_version=fox.version, text="redder")
    await feedback.customer_action(db, token, "character", owl.id, "submit", expected_version=owl.version, text="wiser")
    workflow.transition(project, S.characters_regenerated)
    await db.commit()

    result = await workflow.send_to_customer(db, project.id)
    assert result.resolved == 1
    assert fox.feedback_notes is None
    assert owl.feedback_notes == "wiser" and not owl.is_resolved
    assert owl.customer_image_url is None


async def test_failed_commit_leaves_status_untouched(db, session_maker, make_project, give_main_image, monkeypatch):
    project = await give_main_image(await make_project())
    pid = project.id

    async def broken_commit():
        raise OperationalError("UPDATE project", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(PersistenceError):
        await workflow.send_to_customer(db, pid)

    async with session_maker() as fresh:
        stored = await fresh.get(Project, pid)
        assert stored.status == S.draft
        assert stored.review_token is None
        assert stored.character_send_count == 0


async def test_send_requires_email(db, make_project):
    project = await make_project(email=None)
    with pytest.raises(ValidationError):
        await workflow.send_to_customer(db, project.id)
    assert project.status == S.draft


async def test_send_blocked_while_generation_runs(db, make_project, give_main_image):
    project = await give_main_image(await make_project())
    await workflow.start_character_generation(db, project.id)
    with pytest.raises(ConflictError):
        await workflow.send_to_customer(db, project.id)


async def test_send_blocked_by_active_job(db, make_project, give_main_image):
    project = await give_main_image(await make_project())
    JOBS.new(project.id, total=2)
    with pytest.raises(ConflictError):
        await workflow.send_to_customer(db, project.id)


async def test_generation_needs_ready_main_image(db, make_project):
    project = await make_project()
    with pytest.raises(TransitionError):
        await workflow.start_character_generation(db, project.id)
    project.main_character.image = Failed("blocked")
    await db.commit()
    with pytest.raises(TransitionError):
        await workflow.start_character_generation(db, project.id)


async def test_submit_review_starts_generation_for_missing_characters(db, make_project, give_main_image, notifier):
    project = await give_main_image(await make_project())
    await workflow.send_to_customer(db, project.id)

    outcome = await workflow.submit_character_review(db, project.review_token, notifier=notifier)
    assert outcome.start_generation
    assert project.status == S.character_generation


async def test_submit_review_with_notes_asks_for_revision(db, make_project, give_main_image):
    project = await give_main_image(await make_project(secondaries=()))
    await workflow.send_to_customer(db, project.id)
    main = project.main_character
    await feedback.customer_action(db, project.review_token, "character", main.id, "submit",
                                   expected_version=0, text="taller")

    outcome = await workflow.submit_character_review(db, project.review_token)
    assert not outcome.start_generation
    assert outcome.status == S.character_revision_needed


async def test_submit_review_without_notes_approves(db, make_project, give_main_image):
    project = await give_main_image(await make_project(secondaries=()))
    await workflow.send_to_customer(db, project.id)
    outcome = await workflow.submit_character_review(db, project.review_token)
    assert outcome.status == S.characters_approved


async def test_approvals_are_idempotent(db, make_project, give_main_image, notifier, monkeypatch):
    from studio.settings.config import settings

    monkeypatch.setattr(settings, "ADMIN_NOTIFY_EMAIL", "studio@example.com")
    project = await give_main_image(await make_project(secondaries=()))
    await workflow.send_to_customer(db, project.id)

    first = await workflow.approve_characters(db, project.review_token, notifier=notifier)
    second = await workflow.approve_characters(db, project.review_token, notifier=notifier)
    await drain()
    assert first.status == second.status == S.characters_approved
    assert [i.kind for i in notifier.sent] == [NotificationKind.characters_approved]
    assert notifier.sent[0].recipient == "studio@example.com"


async def test_invalid_token(db):
    with pytest.raises(NotFoundError):
        await workflow.load_project_by_token(db, "nope")
    with pytest.raises(ValidationError):
        await workflow.load_project_by_token(db, "  ")


async def _approved_project(db, make_project, give_main_image):
    project = await give_main_image(await make_project(secondaries=()))
    await workflow.send_to_customer(db, project.id)
    await workflow.approve_characters(db, project.review_token)
    return project


async def test_illustration_send_captures_page_originals(db, make_project, give_main_image):
    project = await _approved_project(db, make_project, give_main_image)
    page = project.pages[0]
    page.illustration = Ready("http://studio.test/static/uploads/p1.png")
    await db.commit()

    result = await workflow.send_to_customer(db, project.id)
    assert result.target is ReviewTarget.illustrations
    assert result.plan.kind is NotificationKind.illustrations_first_batch_ready
    assert project.status == S.illustration_review
    assert page.original_story_text == "Story 1"
    assert page.customer_illustration_url == "http://studio.test/static/uploads/p1.png"

    page.story_text = "Story 1, edited"
    await db.commit()
    await workflow.send_to_customer(db, project.id)
    assert page.original_story_text == "Story 1"


async def test_manual_approve_resolves_open_page_notes(db, make_project, give_main_image):
    project = await _approved_project(db, make_project, give_main_image)
    page = project.pages[0]
    page.illustration = Ready("http://studio.test/static/uploads/p1.png")
    await db.commit()
    await workflow.send_to_customer(db, project.id)
    await feedback.customer_action(db, project.review_token, "page", page.id, "submit",
                                   expected_version=page.version, text="more stars")

    await workflow.manual_approve_illustrations(db, project.id)
    assert project.status == S.completed
    assert page.feedback_notes is None
    assert page.feedback_history[-1]["note"] == "more stars"


async def test_reset_illustrations(db, make_project, give_main_image):
    project = await _approved_project(db, make_project, give_main_image)
    page = project.pages[0]
    page.illustration = Ready("http://studio.test/static/uploads/p1.png")
    await db.commit()
    await workflow.send_to_customer(db, project.id)
    old_token = project.review_token
    db.add(ComparisonDraft(project_id=project.id, target_kind=ComparisonTargetKind.page, target_id=page.id,
                           old_url="a", new_url="b"))
    await db.commit()

    await workflow.reset_illustrations(db, project.id)
    assert project.status == S.characters_approved
    assert project.illustration_send_count == 0
    assert project.review_token != old_token
    assert page.illustration is None and page.customer_illustration_url is None
    rounds = [r.number for r in project.rounds if r.target == ReviewTarget.illustrations]
    assert rounds == [0]
    assert (await db.execute(select(ComparisonDraft))).scalars().all() == []


async def test_reset_not_allowed_before_approval(db, make_project):
    project = await make_project()
    with pytest.raises(TransitionError):
        await workflow.reset_illustrations(db, project.id)


async def test_customer_actions_need_open_review(db, make_project, give_main_image):
    project = await give_main_image(await make_project(secondaries=()))
    await workflow.send_to_customer(db, project.id)
    await workflow.approve_characters(db, project.review_token)
    with pytest.raises(TransitionError):
        await feedback.customer_action(db, project.review_token, "character", project.main_character.id,
                                       "submit", expected_version=0, text="late note")


def test_page_state():
    from studio.models import Page

    page = Page(page_number=1)
    assert workflow.page_state(page) == "not_illustrated"
    page.illustration = Failed("x")
    assert workflow.page_state(page) == "generation_failed"
    page.illustration = Ready("u")
    assert workflow.page_state(page) == "illustrated"
    page.feedback_notes = "redo"
    assert workflow.page_state(page) == "revision_requested"

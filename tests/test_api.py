"""HTTP surface: admin routes by project id, customer routes by review token."""

from studio.background import drain

PROJECT = {
    "book_title": "Milo and the Moon",
    "author_firstname": "Ada",
    "author_lastname": "Lovelace",
    "author_email": "ada@example.com",
    "illustration_aspect_ratio": "8:10",
    "pages": [{"story_text": "Milo looks up."}, {"story_text": "The moon winks."}],
    "characters": [
        {"name": "Milo", "role": "hero", "is_main": True},
        {"name": "Fox", "role": "friend"},
    ],
}


async def _create(api):
    resp = await api.post("/api/admin/projects", json=PROJECT)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_create_and_fetch_project(api):
    created = await _create(api)
    assert created["status"] == "draft"
    assert [p["page_number"] for p in created["pages"]] == [1, 2]
    assert created["characters"][0]["is_main"] is True

    resp = await api.get(f"/api/admin/projects/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["book_title"] == "Milo and the Moon"


async def test_errors_are_json(api):
    resp = await api.get("/api/admin/projects/404")
    assert resp.status_code == 404
    assert "not found" in resp.json()["error"]

    resp = await api.get("/api/review/not-a-token")
    assert resp.status_code == 404


async def test_invalid_email_rejected(api):
    resp = await api.post("/api/admin/projects", json={**PROJECT, "author_email": "nope"})
    assert resp.status_code == 422


async def test_generation_flow_and_customer_review(api, notifier, provider):
    project = await _create(api)
    pid = project["id"]
    main_id, fox_id = (c["id"] for c in project["characters"])

    resp = await api.post(f"/api/admin/projects/{pid}/characters/{main_id}/generate")
    assert resp.json()["ok"] is True

    resp = await api.post(f"/api/admin/projects/{pid}/characters/generation/start")
    assert resp.status_code == 202, resp.text
    job_id = resp.json()["id"]
    await drain(timeout=5)

    job = (await api.get(f"/api/admin/jobs/{job_id}")).json()
    assert job["status"] == "done"
    assert job["generated"] == 1
    assert (await api.get(f"/api/admin/projects/{pid}")).json()["status"] == "character_generation_complete"

    sent = (await api.post(f"/api/admin/projects/{pid}/send")).json()
    assert sent["notification"] == "first_batch_ready"
    assert sent["send_count"] == 1
    await drain(timeout=5)
    token = notifier.sent[-1].variables["review_url"].rsplit("/", 1)[1]

    view = (await api.get(f"/api/review/{token}")).json()
    assert view["author_name"] == "Ada Lovelace"
    fox = next(c for c in view["characters"] if c["id"] == fox_id)
    assert fox["image_url"]

    resp = await api.post(f"/api/review/{token}/characters/{fox_id}/submit",
                          json={"expected_version": fox["version"], "text": "bushier tail"})
    assert resp.status_code == 200, resp.text
    assert resp.json()["feedback_notes"] == "bushier tail"

    stale = await api.post(f"/api/review/{token}/characters/{fox_id}/edit",
                           json={"expected_version": fox["version"], "text": "fluffier"})
    assert stale.status_code == 409

    outcome = (await api.post(f"/api/review/{token}/characters/submit")).json()
    assert outcome == {"status": "character_revision_needed", "generation_started": False}


async def test_upload_then_sketch_in_background(api, provider):
    project = await _create(api)
    pid, page_id = project["id"], project["pages"][0]["id"]

    resp = await api.post(
        f"/api/admin/projects/{pid}/pages/{page_id}/upload",
        files={"file": ("page.png", b"\x89PNG fake", "image/png")},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["committed"] is True
    await drain(timeout=5)

    page = (await api.get(f"/api/admin/projects/{pid}")).json()["pages"][0]
    assert page["illustration"]["state"] == "ready"
    assert page["sketch"]["state"] == "ready"
    assert len(provider.sketch_calls) == 1


async def test_admin_thread_actions_on_pages(api, session_maker):
    from studio.artifacts import Ready
    from studio.models import Page, Project, ProjectStatus

    project = await _create(api)
    pid, page_id = project["id"], project["pages"][0]["id"]
    async with session_maker() as s:
        p = await s.get(Project, pid)
        p.status = ProjectStatus.characters_approved
        page = await s.get(Page, page_id)
        page.illustration = Ready("http://studio.test/static/uploads/p1.png")
        await s.commit()

    await api.post(f"/api/admin/projects/{pid}/send")
    token = (await api.get(f"/api/admin/projects/{pid}")).json()["review_token"]

    r = await api.post(f"/api/review/{token}/pages/{page_id}/submit", json={"expected_version": 0, "text": "more stars"})
    assert r.status_code == 200
    assert r.json()["state"] == "revision_requested"
    r = await api.post(f"/api/admin/projects/{pid}/pages/{page_id}/reply", json={"expected_version": 1, "text": "how many?"})
    assert r.status_code == 200, r.text
    assert r.json()["admin_reply_type"] == "reply"
    r = await api.post(f"/api/review/{token}/pages/{page_id}/follow-up", json={"expected_version": 2, "text": "a hundred"})
    assert [e["type"] for e in r.json()["conversation_thread"]] == ["admin", "customer"]

    r = await api.post(f"/api/admin/projects/{pid}/pages/{page_id}/shout", json={"expected_version": 3})
    assert r.status_code == 400

    r = await api.post(f"/api/review/{token}/illustrations/approve")
    assert r.json()["status"] == "completed"


async def test_reference_upload_returns_a_public_url(api, store):
    project = await _create(api)
    resp = await api.post(
        f"/api/admin/projects/{project['id']}/references",
        files={"file": ("ref.jpg", b"jpeg bytes", "image/jpeg")},
    )
    assert resp.status_code == 201, resp.text
    url = resp.json()["url"]
    assert f"/static/uploads/projects/{project['id']}/references/ref-" in url
    assert url.endswith(".jpeg")

    resp = await api.post(
        f"/api/admin/projects/{project['id']}/references",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 400

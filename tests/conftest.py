"""Shared fixtures: a throwaway SQLite database, fake image provider and notifier."""

import os
import tempfile
from pathlib import Path

# settings are read at import time; point them somewhere harmless first
_TMP = tempfile.mkdtemp(prefix="studio-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP}/import.db")
os.environ.setdefault("STATIC_DIR", os.path.join(_TMP, "static"))
os.environ.setdefault("TEMPLATES_DIR", str(Path(__file__).resolve().parents[1] / "templates"))
os.environ.setdefault("EMAIL_TRANSPORT", "dummy")
os.environ.setdefault("BASE_URL", "http://studio.test")

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from studio.artifacts import Ready  # noqa: E402
from studio.background import drain  # noqa: E402
from studio.database import Base, get_db  # noqa: E402
from studio.deps import get_blob_store, get_generation_client, get_notifier, get_session_maker  # noqa: E402
from studio.errors import PermanentProviderError, TransientProviderError  # noqa: E402
from studio.jobs import JOBS  # noqa: E402
from studio.services import workflow  # noqa: E402
from studio.services.generation.client import GenerationClient, RetryPolicy  # noqa: E402
from studio.services.generation.compositor import ImageLoader, ImagePart, TextPart  # noqa: E402
from studio.services.storage import LocalBlobStore  # noqa: E402


# -- Fakes --------------------------------------------------------------------


class FakeLoader(ImageLoader):
    """Never touches the network: the 'image' bytes are the URL itself."""

    def __init__(self):
        super().__init__()
        self.fetched = []

    async def fetch(self, url):
        self.fetched.append(url)
        return f"img:{url}".encode(), "image/png"


class FakeProvider:
    """Records every call; ``fail`` holds exceptions to raise before succeeding."""

    def __init__(self):
        self.calls = []
        self.sketch_calls = []
        self.fail = []
        self.sketch_fail = []
        self.fail_for = {}  # instruction substring -> exception, raised on every matching call
        self.counter = 0

    async def generate(self, parts, *, aspect_ratio=None, output_size=None):
        self.calls.append({"parts": list(parts), "aspect_ratio": aspect_ratio, "output_size": output_size})
        text = parts[-1].text if parts and isinstance(parts[-1], TextPart) else ""
        for needle, exc in self.fail_for.items():
            if needle in text:
                raise exc
        if self.fail:
            raise self.fail.pop(0)
        self.counter += 1
        return f"colored-{self.counter}".encode()

    async def transform(self, image, instruction, *, output_size=None):
        self.sketch_calls.append({"image": image, "instruction": instruction, "output_size": output_size})
        if self.sketch_fail:
            raise self.sketch_fail.pop(0)
        return b"sketch"

    def instruction(self, i=-1):
        parts = self.calls[i]["parts"]
        assert isinstance(parts[-1], TextPart)
        return parts[-1].text

    def images(self, i=-1):
        return [p.data for p in self.calls[i]["parts"] if isinstance(p, ImagePart)]


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, intent):
        self.sent.append(intent)


async def _no_sleep(_delay):
    return None


def transient(msg="503 UNAVAILABLE: model overloaded"):
    return TransientProviderError(msg)


def permanent(msg="400 INVALID_ARGUMENT: prompt blocked"):
    return PermanentProviderError(msg)


# -- Fixtures -----------------------------------------------------------------


@pytest.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/studio.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    yield maker
    await drain(timeout=5)
    await engine.dispose()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def loader():
    return FakeLoader()


@pytest.fixture
def client(provider, loader):
    policy = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)
    return GenerationClient(provider, loader, policy=policy, sketch_policy=policy, sleep=_no_sleep)


@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(tmp_path / "static", base_url="http://studio.test", url_prefix="/static")


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture(autouse=True)
def _clean_jobs():
    JOBS._jobs.clear()
    yield
    JOBS._jobs.clear()


@pytest.fixture
def make_project(db):
    async def _make(*, pages=2, secondaries=("Fox", "Owl"), email="ada@example.com", aspect="8.5:11", cast=()):
        chars = [{"name": "Milo", "role": "hero", "description": "a small boy with a red scarf", "is_main": True}]
        chars += [{"name": n, "role": "friend"} for n in secondaries]
        return await workflow.create_project(
            db,
            book_title="Milo and the Moon",
            author_firstname="Ada",
            author_lastname="Lovelace",
            author_email=email,
            illustration_aspect_ratio=aspect,
            pages=[
                {"story_text": f"Story {i}", "scene_description": f"Scene {i}", "characters": list(cast) if i == 1 else []}
                for i in range(1, pages + 1)
            ],
            characters=chars,
        )

    return _make


@pytest.fixture
def give_main_image(db):
    async def _give(project, url="http://studio.test/static/uploads/main.png"):
        project.main_character.image = Ready(url)
        await db.commit()
        return project

    return _give


@pytest.fixture
async def api(session_maker, client, store, notifier):
    from studio.main import app

    async def _db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_generation_client] = lambda: client
    app.dependency_overrides[get_blob_store] = lambda: store
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://studio.test") as ac:
        yield ac
    app.dependency_overrides.clear()

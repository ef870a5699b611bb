"""FastAPI dependencies for the outside collaborators (overridden in tests)."""

from functools import lru_cache

from sqlalchemy.ext.asyncio import async_sessionmaker

from .database import async_session_maker
from .services.generation.client import GenerationClient
from .services.generation.gemini import GeminiImageProvider
from .services.notifications import EmailNotifier, Notifier
from .services.storage import BlobStore, default_store


@lru_cache
def get_blob_store() -> BlobStore:
    return default_store()


@lru_cache
def get_generation_client() -> GenerationClient:
    return GenerationClient(GeminiImageProvider())


@lru_cache
def get_notifier() -> Notifier:
    return EmailNotifier()


def get_session_maker() -> async_sessionmaker:
    return async_session_maker

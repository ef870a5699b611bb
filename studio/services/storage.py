"""Blob storage for generated artifacts and uploaded reference images."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from ..background import run_sync
from ..settings.config import settings

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str, upsert: bool = False) -> str: ...

    async def list(self, prefix: str) -> list[dict]: ...

    async def remove(self, paths: list[str]) -> None: ...

    def path_for_url(self, url: str) -> Optional[str]: ...


# ---- Strategy for bucketed paths ----
class ProjectBucketsStrategy:
    """
    Places files under:
      projects/<project_id>/characters/<character_id>/(image|sketch)-<uid>.<ext>
      projects/<project_id>/pages/<page_number>/(illustration|sketch)-<uid>.<ext>
      projects/<project_id>/references/<uid>.<ext>
    """

    def __init__(self, root: str = "projects"):
        self.root = root

    @staticmethod
    def _name(kind: str, ext: str) -> str:
        return f"{kind}-{uuid.uuid4().hex[:12]}.{ext.lstrip('.')}"

    def character_dir(self, project_id: int, character_id: int) -> str:
        return str(Path(self.root) / str(project_id) / "characters" / str(character_id))

    def character_path(self, project_id: int, character_id: int, kind: str, ext: str = "png") -> str:
        return str(Path(self.character_dir(project_id, character_id)) / self._name(kind, ext))

    def page_path(self, project_id: int, page_number: int, kind: str, ext: str = "png") -> str:
        return str(Path(self.root) / str(project_id) / "pages" / str(page_number) / self._name(kind, ext))

    def reference_path(self, project_id: int, ext: str = "jpg") -> str:
        return str(Path(self.root) / str(project_id) / "references" / self._name("ref", ext))


class LocalBlobStore:
    """Writes under ``<static_root>/uploads`` and hands back public URLs."""

    def __init__(self, static_root: Path | str, *, base_url: str = "", url_prefix: str = "/static"):
        self.static_root = Path(static_root)
        self.upload_root = self.static_root / "uploads"
        self.upload_root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")
        self.url_prefix = "/" + url_prefix.strip("/")

    def _abs(self, path: str) -> Path:
        rel = path.lstrip("/").replace("\\", "/")
        target = (self.upload_root / rel).resolve()
        if self.upload_root.resolve() not in target.parents:
            raise ValueError(f"path escapes the upload root: {path}")
        return target

    def url_for(self, path: str) -> str:
        rel = path.lstrip("/").replace("\\", "/")
        return f"{self.base_url}{self.url_prefix}/uploads/{rel}"

    def path_for_url(self, url: str) -> Optional[str]:
        marker = f"{self.url_prefix}/uploads/"
        route = urlsplit(url).path
        if marker not in route:
            return None
        return route.split(marker, 1)[1]

    async def put(self, path: str, data: bytes, content_type: str, upsert: bool = False) -> str:
        target = self._abs(path)

        def _write() -> None:
            if target.exists() and not upsert:
                raise FileExistsError(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await run_sync(_write)
        logger.debug("stored %s (%s, %d bytes)", path, content_type, len(data))
        return self.url_for(path)

    async def list(self, prefix: str) -> list[dict]:
        base = self._abs(prefix) if prefix.strip("/") else self.upload_root

        def _scan() -> list[dict]:
            if not base.is_dir():
                return []
            return [{"name": p.name} for p in sorted(base.iterdir()) if p.is_file()]

        return await run_sync(_scan)

    async def remove(self, paths: list[str]) -> None:
        uploads_root = self.upload_root.resolve()

        def _unlink() -> None:
            for rel in paths:
                if not rel:
                    continue
                abspath = self._abs(rel)
                if not abspath.exists():
                    continue
                abspath.unlink()
                # prune empty folders up to uploads/
                cur = abspath.parent
                while cur != uploads_root and uploads_root in cur.parents:
                    try:
                        cur.rmdir()
                    except OSError:
                        break
                    cur = cur.parent

        await run_sync(_unlink)


async def remove_url(store: BlobStore, url: Optional[str]) -> None:
    """Delete the blob behind a public URL; foreign URLs are left alone."""
    if not url:
        return
    path = store.path_for_url(url)
    if path is None:
        logger.info("not removing %s: not managed by this store", url)
        return
    await store.remove([path])


def with_cache_buster(url: str, token: Optional[str] = None) -> str:
    """Append ``v=<token>`` so clients refetch a blob written at the same path."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "v"]
    query.append(("v", token or uuid.uuid4().hex[:10]))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def default_store() -> LocalBlobStore:
    return LocalBlobStore(settings.STATIC_DIR, base_url=settings.BASE_URL, url_prefix=settings.STATIC_URL_PREFIX)


__all__ = [
    "BlobStore",
    "ProjectBucketsStrategy",
    "LocalBlobStore",
    "remove_url",
    "with_cache_buster",
    "default_store",
]

"""Tagged artifact values stored on pages and characters.

An artifact is one of:

* ``Ready(url)``     the image exists at ``url``
* ``Failed(message)`` the last generation attempt failed; the UI offers a retry
* ``Pending()``      generation (or re-derivation) is outstanding

``None`` on the column means there has never been an artifact.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


@dataclass(frozen=True, slots=True)
class Ready:
    url: str

    state = "ready"


@dataclass(frozen=True, slots=True)
class Failed:
    message: str

    state = "failed"


@dataclass(frozen=True, slots=True)
class Pending:
    state = "pending"


Artifact = Union[Ready, Failed, Pending]


def ready_url(artifact: Optional[Artifact]) -> Optional[str]:
    """Return the URL of a Ready artifact, else None."""
    if isinstance(artifact, Ready):
        return artifact.url
    return None


def is_ready(artifact: Optional[Artifact]) -> bool:
    return isinstance(artifact, Ready)


def to_payload(artifact: Optional[Artifact]) -> Optional[dict[str, Any]]:
    if artifact is None:
        return None
    if isinstance(artifact, Ready):
        return {"state": "ready", "url": artifact.url}
    if isinstance(artifact, Failed):
        return {"state": "failed", "message": artifact.message}
    if isinstance(artifact, Pending):
        return {"state": "pending"}
    raise TypeError(f"not an artifact: {artifact!r}")


def from_payload(payload: Optional[dict[str, Any]]) -> Optional[Artifact]:
    if not payload:
        return None
    state = payload.get("state")
    if state == "ready" and payload.get("url"):
        return Ready(str(payload["url"]))
    if state == "failed":
        return Failed(str(payload.get("message") or "Generation failed"))
    if state == "pending":
        return Pending()
    raise ValueError(f"unknown artifact payload: {payload!r}")


class ArtifactType(TypeDecorator):
    """JSON column holding a tagged artifact value."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        return to_payload(value)

    def process_result_value(self, value, dialect):
        return from_payload(value)


__all__ = [
    "Ready",
    "Failed",
    "Pending",
    "Artifact",
    "ArtifactType",
    "ready_url",
    "is_ready",
    "to_payload",
    "from_payload",
]

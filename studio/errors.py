"""Error taxonomy shared by the services and the HTTP layer."""

from __future__ import annotations


class StudioError(RuntimeError):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StudioError):
    """A required identifier or field is missing or malformed."""

    status_code = 400


class NotFoundError(StudioError):
    status_code = 404


class ConflictError(StudioError):
    """The target changed underneath the caller, or another operation holds it."""

    status_code = 409


class TransitionError(StudioError):
    """The project status does not allow the requested move."""

    status_code = 409


class PersistenceError(StudioError):
    """A datastore write failed; the whole transition was rolled back."""

    status_code = 500


class ProviderError(StudioError):
    status_code = 502


class TransientProviderError(ProviderError):
    """Overload / unavailable / rate limit signal from the image provider."""

    status_code = 503


class PermanentProviderError(ProviderError):
    status_code = 502


__all__ = [
    "StudioError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "TransitionError",
    "PersistenceError",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
]

from .client import GenerationClient, ImageProvider, RetryPolicy
from .compositor import CharacterReference, GenerationRequest, ImageLoader

__all__ = [
    "GenerationClient",
    "ImageProvider",
    "RetryPolicy",
    "CharacterReference",
    "GenerationRequest",
    "ImageLoader",
]

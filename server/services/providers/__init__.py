from .base import GenerationProvider, ProviderError
from .replicate import ReplicateProvider, MODEL_SLUGS, resolve_model_slug

__all__ = [
    "GenerationProvider",
    "ProviderError",
    "ReplicateProvider",
    "MODEL_SLUGS",
    "resolve_model_slug",
]

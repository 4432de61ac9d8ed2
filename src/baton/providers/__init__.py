"""Provider strategies."""

from .base import (
    CanonicalResponse,
    ModelRequest,
    ProviderChunk,
    ProviderStrategy,
    StatefulProviderStrategy,
    StreamingProviderStrategy,
    normalize_chat_completion,
)
from .republic_client import RepublicProvider, map_provider_exception

__all__ = [
    "CanonicalResponse",
    "ModelRequest",
    "ProviderChunk",
    "ProviderStrategy",
    "RepublicProvider",
    "StatefulProviderStrategy",
    "StreamingProviderStrategy",
    "map_provider_exception",
    "normalize_chat_completion",
]

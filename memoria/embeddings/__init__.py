"""Embedding providers: text in, unit-length vectors out."""

from .base import (
    EmbeddingProvider,
    EmbeddingProviderError,
    build_item_text,
    normalize_vector,
    prepare_text,
)
from .factory import create_embedding_provider

__all__ = [
    "EmbeddingProvider",
    "EmbeddingProviderError",
    "build_item_text",
    "normalize_vector",
    "prepare_text",
    "create_embedding_provider",
]

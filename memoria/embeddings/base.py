"""Embedding provider interface.

Providers turn text into unit-length float32 vectors of a fixed dimension.
The transport (HTTP service, hosted API) lives in subclasses; this module
owns the parts every provider shares:

- input preparation (whitespace collapse, deterministic truncation)
- circuit breaker protection around the transport
- output validation and L2 normalisation

``embed`` is used for search queries, ``embed_batch`` for item documents.
Providers that distinguish the two (e.g. Gemini task types) rely on that.
"""

from abc import ABC, abstractmethod
import re
from typing import List, Optional, Sequence

import numpy as np
import structlog

from ..common.circuit_breaker import CircuitBreaker, CircuitBreakerError
from ..items.models import Item

logger = structlog.get_logger("embeddings.base")

_WHITESPACE = re.compile(r"\s+")


class EmbeddingProviderError(Exception):
    """Embedding generation failed (transport, status, payload or input)."""
    pass


def prepare_text(text: str, max_chars: int) -> str:
    """Collapse whitespace and keep the first ``max_chars`` characters."""
    cleaned = _WHITESPACE.sub(" ", text or "").strip()[:max_chars].strip()
    if not cleaned:
        raise EmbeddingProviderError("Text is empty after cleaning")
    return cleaned


def normalize_vector(values: Sequence[float], dimension: int) -> np.ndarray:
    """Validate a raw vector and scale it to unit length."""
    try:
        array = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise EmbeddingProviderError(f"Malformed embedding values: {e}") from e
    if array.ndim != 1 or array.shape[0] != dimension:
        raise EmbeddingProviderError(
            f"Expected embedding of dimension {dimension}, got shape {array.shape}"
        )
    norm = float(np.linalg.norm(array))
    if not np.isfinite(norm) or norm == 0.0:
        raise EmbeddingProviderError("Embedding has zero or non-finite norm")
    return array / norm


def build_item_text(item: Item) -> str:
    """Text representation of an item used for its document embedding."""
    lines = [f"Type: {item.content_type.value}", f"Title: {item.title}"]
    if item.body:
        lines.append(f"Content: {item.body}")
    if item.tags:
        lines.append(f"Tags: {', '.join(item.tags)}")
    if item.source_url:
        lines.append(f"Source: {item.source_url}")
    return "\n".join(lines)


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers.

    Parameters
    - dimension: Length of every returned vector
    - max_input_chars: Inputs are truncated to this many characters
    - breaker: Circuit breaker guarding the transport; one is created if omitted
    """

    def __init__(
        self,
        dimension: int,
        max_input_chars: int = 10000,
        breaker: Optional[CircuitBreaker] = None,
    ):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        if max_input_chars <= 0:
            raise ValueError("max_input_chars must be positive")
        self.dimension = dimension
        self.max_input_chars = max_input_chars
        self.breaker = breaker or CircuitBreaker(
            name=type(self).__name__,
            expected_exception=EmbeddingProviderError,
        )

    async def embed(self, text: str) -> np.ndarray:
        """Embed a single search query."""
        vectors = await self._guarded([prepare_text(text, self.max_input_chars)], query=True)
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed item documents, preserving input order."""
        if not texts:
            return []
        prepared = [prepare_text(text, self.max_input_chars) for text in texts]
        return await self._guarded(prepared, query=False)

    async def _guarded(self, texts: List[str], query: bool) -> List[np.ndarray]:
        try:
            raw = await self.breaker.call(self._request, texts, query)
        except CircuitBreakerError as e:
            logger.warning("Embedding provider circuit open", provider=self.breaker.name)
            raise EmbeddingProviderError(str(e)) from e

        if len(raw) != len(texts):
            raise EmbeddingProviderError(
                f"Expected {len(texts)} embeddings, got {len(raw)}"
            )
        return [normalize_vector(values, self.dimension) for values in raw]

    @abstractmethod
    async def _request(self, texts: List[str], query: bool) -> List[Sequence[float]]:
        """Call the backend and return one raw vector per input text.

        Transport and payload failures must raise ``EmbeddingProviderError``.
        """
        pass

    async def close(self) -> None:
        """Release transport resources; no-op by default."""
        pass

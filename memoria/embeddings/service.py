"""Client for a self-hosted embedding HTTP service.

Wire format
- Request: ``POST <base_url>/api/v1/embed`` with
  ``{"items": [{"text": ...}], "model": ...}``
- Response: ``{"vectors": [[...], ...]}`` in request order
"""

from typing import Any, List, Optional, Sequence

import httpx
import structlog

from ..common.circuit_breaker import CircuitBreaker
from .base import EmbeddingProvider, EmbeddingProviderError

logger = structlog.get_logger("embeddings.service")


class ServiceEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by the embedding service API."""

    def __init__(
        self,
        base_url: str,
        dimension: int,
        model: Optional[str] = None,
        max_input_chars: int = 10000,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(dimension, max_input_chars, breaker)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, texts: List[str], query: bool) -> List[Sequence[float]]:
        payload: dict = {"items": [{"text": text} for text in texts]}
        if self.model:
            payload["model"] = self.model

        try:
            response = await self._client.post(
                f"{self.base_url}/api/v1/embed",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data: Any = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Embedding service returned error status",
                status_code=e.response.status_code,
            )
            raise EmbeddingProviderError(
                f"Embedding service returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("Embedding service request failed", error=str(e))
            raise EmbeddingProviderError(f"Embedding service request failed: {e}") from e
        except ValueError as e:
            raise EmbeddingProviderError("Embedding service returned invalid JSON") from e

        vectors = data.get("vectors") if isinstance(data, dict) else None
        if not isinstance(vectors, list):
            raise EmbeddingProviderError("Embedding service response has no 'vectors'")
        return vectors

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

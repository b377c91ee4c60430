"""Google Gemini embedding client (Generative Language REST API).

Queries use the ``RETRIEVAL_QUERY`` task type and documents use
``RETRIEVAL_DOCUMENT``, which is what the model expects for asymmetric
search. Batches are split to stay under the API's per-call request cap.
"""

from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from ..common.circuit_breaker import CircuitBreaker
from .base import EmbeddingProvider, EmbeddingProviderError

logger = structlog.get_logger("embeddings.gemini")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
MAX_BATCH_REQUESTS = 100


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by the Gemini ``embedContent`` endpoints."""

    def __init__(
        self,
        api_key: str,
        dimension: int = 768,
        model: str = "text-embedding-004",
        max_input_chars: int = 10000,
        timeout: float = 5.0,
        base_url: str = GEMINI_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        if not api_key:
            raise ValueError("Gemini embedding provider requires an API key")
        super().__init__(dimension, max_input_chars, breaker)
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def _model_path(self) -> str:
        return self.model if self.model.startswith("models/") else f"models/{self.model}"

    def _content_request(self, text: str, task_type: str) -> Dict[str, Any]:
        return {
            "model": self._model_path,
            "content": {"parts": [{"text": text}]},
            "taskType": task_type,
        }

    async def _post(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                f"{self.base_url}/{self._model_path}:{method}",
                json=payload,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Gemini API returned error status",
                method=method,
                status_code=e.response.status_code,
            )
            raise EmbeddingProviderError(f"Gemini API returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Gemini API request failed", method=method, error=str(e))
            raise EmbeddingProviderError(f"Gemini API request failed: {e}") from e
        except ValueError as e:
            raise EmbeddingProviderError("Gemini API returned invalid JSON") from e

        if not isinstance(data, dict):
            raise EmbeddingProviderError("Gemini API returned an unexpected payload")
        return data

    async def _request(self, texts: List[str], query: bool) -> List[Sequence[float]]:
        task_type = "RETRIEVAL_QUERY" if query else "RETRIEVAL_DOCUMENT"

        if len(texts) == 1:
            data = await self._post("embedContent", self._content_request(texts[0], task_type))
            values = (data.get("embedding") or {}).get("values")
            if not values:
                raise EmbeddingProviderError("No embedding values returned")
            return [values]

        vectors: List[Sequence[float]] = []
        for start in range(0, len(texts), MAX_BATCH_REQUESTS):
            chunk = texts[start:start + MAX_BATCH_REQUESTS]
            data = await self._post(
                "batchEmbedContents",
                {"requests": [self._content_request(text, task_type) for text in chunk]},
            )
            embeddings = data.get("embeddings")
            if not isinstance(embeddings, list) or len(embeddings) != len(chunk):
                raise EmbeddingProviderError("Gemini batch response size mismatch")
            for embedding in embeddings:
                values = embedding.get("values") if isinstance(embedding, dict) else None
                if not values:
                    raise EmbeddingProviderError("No embedding values returned")
                vectors.append(values)
        return vectors

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

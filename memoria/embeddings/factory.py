"""Embedding provider factory."""

from typing import Optional

import httpx
import structlog

from ..common.config import BaseConfig
from .base import EmbeddingProvider
from .gemini import GeminiEmbeddingProvider
from .service import ServiceEmbeddingProvider

logger = structlog.get_logger("embeddings.factory")


def create_embedding_provider(
    config: BaseConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> EmbeddingProvider:
    """Create the provider selected by ``MEMORIA_EMBEDDING_BACKEND``.

    Parameters
    - config: Service configuration
    - client: Shared HTTP client owned by the caller; the provider creates
      and owns one when omitted
    """
    backend = config.memoria_embedding_backend
    logger.info("Creating embedding provider", backend=backend, model=config.memoria_embedding_model)

    if backend == "service":
        return ServiceEmbeddingProvider(
            base_url=config.memoria_embedding_service_url,
            dimension=config.memoria_vector_dimension,
            model=config.memoria_embedding_model,
            max_input_chars=config.memoria_embedding_max_chars,
            timeout=config.memoria_embedding_timeout_seconds,
            client=client,
        )

    if backend == "gemini":
        if not config.memoria_gemini_api_key:
            raise ValueError("MEMORIA_GEMINI_API_KEY is required for the gemini backend")
        return GeminiEmbeddingProvider(
            api_key=config.memoria_gemini_api_key,
            dimension=config.memoria_vector_dimension,
            model=config.memoria_embedding_model,
            max_input_chars=config.memoria_embedding_max_chars,
            timeout=config.memoria_embedding_timeout_seconds,
            client=client,
        )

    raise ValueError(f"Unsupported embedding backend: {backend}")

"""Vector index factory.

Centralizes creation of concrete ``VectorIndex`` backends so the services
only depend on configuration, never on implementation classes.
"""

from enum import Enum
from typing import Any, Dict

import structlog

from ..common.config import BaseConfig
from .base import VectorIndex
from .memory import InMemoryVectorIndex
from .pgvector import PgVectorIndex

logger = structlog.get_logger("vector_store.factory")


class VectorIndexType(Enum):
    """Supported vector index types."""
    MEMORY = "memory"
    PGVECTOR = "pgvector"


class VectorIndexFactory:
    """Factory for creating vector index instances."""

    @staticmethod
    def create(index_type: VectorIndexType, config: Dict[str, Any]) -> VectorIndex:
        """Create a vector index instance.

        Parameters
        - index_type: A ``VectorIndexType`` enum value
        - config: Backend-specific parameters (e.g., DSN for pgvector)
        """
        if index_type == VectorIndexType.MEMORY:
            return InMemoryVectorIndex(vector_dimension=config.get("vector_dimension"))

        elif index_type == VectorIndexType.PGVECTOR:
            dsn = config.get("dsn")
            if not dsn:
                raise ValueError("PgVector requires 'dsn' in config")
            dimension = config.get("vector_dimension")
            if not dimension:
                raise ValueError("PgVector requires 'vector_dimension' in config")

            return PgVectorIndex(
                dsn=dsn,
                vector_dimension=dimension,
                pool_size=config.get("pool_size", 10),
                command_timeout=config.get("command_timeout", 30),
            )

        else:
            raise ValueError(f"Unsupported vector index type: {index_type}")


def create_vector_index(config: BaseConfig) -> VectorIndex:
    """Create the vector index selected by ``MEMORIA_VECTOR_BACKEND``."""
    backend = config.memoria_vector_backend
    try:
        index_type = VectorIndexType(backend)
    except ValueError:
        raise ValueError(f"Unsupported vector backend: {backend}")

    logger.info("Creating vector index", backend=backend)
    return VectorIndexFactory.create(
        index_type,
        {
            "dsn": config.memoria_vector_db_dsn,
            "vector_dimension": config.memoria_vector_dimension,
            "pool_size": config.memoria_vector_pool_size,
            "command_timeout": config.memoria_vector_command_timeout,
        },
    )

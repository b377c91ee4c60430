"""Item store factory."""

import structlog

from ..common.config import BaseConfig
from .base import ItemStore
from .memory import InMemoryItemStore
from .postgres import PostgresItemStore

logger = structlog.get_logger("items.factory")


def create_item_store(config: BaseConfig) -> ItemStore:
    """Create the store selected by ``MEMORIA_ITEM_BACKEND``."""
    backend = config.memoria_item_backend
    logger.info("Creating item store", backend=backend)

    if backend == "memory":
        return InMemoryItemStore()
    if backend == "postgres":
        return PostgresItemStore(
            dsn=config.memoria_db_dsn,
            pool_size=config.memoria_vector_pool_size,
            command_timeout=config.memoria_vector_command_timeout,
        )
    raise ValueError(f"Unsupported item backend: {backend}")

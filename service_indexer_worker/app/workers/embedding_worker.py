"""Embedding worker for background vector index maintenance.

Turns item ids into stored vectors:

1. load the owner's items (ids that no longer exist are skipped)
2. build each item's document text
3. call the embedding provider in batches, retrying with exponential backoff
4. upsert the vectors into the owner-scoped index

A batch that still fails after ``max_attempts`` is logged and counted as
failed; the worker itself keeps running. The same class backs the inline
dispatcher in the search service and the Celery tasks in this worker.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from memoria.common.metrics import MetricsCollector
from memoria.embeddings.base import EmbeddingProvider, EmbeddingProviderError, build_item_text
from memoria.items.base import ItemStore
from memoria.items.models import Item
from memoria.vector_store.base import VectorIndex, VectorStoreError

logger = structlog.get_logger("indexer_worker.embedding")

RETRYABLE_ERRORS = (EmbeddingProviderError, VectorStoreError)


class EmbeddingJobFailedError(Exception):
    """Some items could not be embedded after all local retries."""
    pass


class EmbeddingWorker:
    """Computes and stores item embeddings."""

    def __init__(
        self,
        item_store: ItemStore,
        vector_index: VectorIndex,
        embedding_provider: EmbeddingProvider,
        metrics: Optional[MetricsCollector] = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        batch_size: int = 16,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.item_store = item_store
        self.vector_index = vector_index
        self.embedding_provider = embedding_provider
        self.metrics = metrics
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.batch_size = batch_size

    async def _call_with_retry(
        self,
        func: Callable[[], Awaitable[Any]],
        operation_name: str,
    ) -> Any:
        """Execute a coroutine-returning callable with retry and backoff."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func()
            except RETRYABLE_ERRORS as exc:
                if attempt == self.max_attempts:
                    logger.error(
                        "Operation failed after retries",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise

                delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)

        raise RuntimeError(f"Retry logic failed for {operation_name}")

    async def embed_items(self, owner_id: str, item_ids: Sequence[str]) -> Dict[str, int]:
        """Embed and store the given items for one owner.

        Returns
        - Counts: ``stored``, ``skipped`` (item no longer exists) and
          ``failed`` (retries exhausted)
        """
        unique_ids = list(dict.fromkeys(item_ids))
        items = await self.item_store.get_many(owner_id, unique_ids)
        skipped = len(unique_ids) - len(items)
        if skipped:
            logger.info("Skipping items that no longer exist", owner_id=owner_id, count=skipped)

        stored = failed = 0
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            try:
                await self._call_with_retry(
                    lambda batch=batch: self._embed_batch(owner_id, batch),
                    operation_name="embed_batch",
                )
                stored += len(batch)
            except RETRYABLE_ERRORS as e:
                failed += len(batch)
                logger.error(
                    "Embedding batch failed",
                    owner_id=owner_id,
                    item_ids=[item.id for item in batch],
                    error=str(e),
                )

        self._record("stored", stored)
        self._record("skipped", skipped)
        self._record("failed", failed)

        logger.info(
            "Embedding jobs processed",
            owner_id=owner_id,
            stored=stored,
            skipped=skipped,
            failed=failed,
        )
        return {"stored": stored, "skipped": skipped, "failed": failed}

    async def _embed_batch(self, owner_id: str, batch: List[Item]) -> None:
        vectors = await self.embedding_provider.embed_batch([build_item_text(item) for item in batch])
        for item, vector in zip(batch, vectors):
            await self.vector_index.upsert(owner_id, item.id, vector)
            if self.metrics:
                self.metrics.record_vector_index_operation("upsert")

    async def reindex_owner(self, owner_id: str, force: bool = False) -> Dict[str, Any]:
        """Embed every item of the owner that lacks a vector (or all with ``force``)."""
        items = await self.item_store.list_by_owner(owner_id)
        if force:
            pending = [item.id for item in items]
        else:
            pending = []
            for item in items:
                if await self.vector_index.get(owner_id, item.id) is None:
                    pending.append(item.id)

        logger.info(
            "Reindexing owner",
            owner_id=owner_id,
            force=force,
            total_items=len(items),
            pending=len(pending),
        )
        result: Dict[str, Any] = await self.embed_items(owner_id, pending)
        result["already_indexed"] = len(items) - len(pending)
        return result

    def _record(self, status: str, count: int) -> None:
        if self.metrics and count:
            self.metrics.record_embedding_job(status, count)

    async def cleanup(self) -> None:
        """Release every backend owned by this worker."""
        await self.embedding_provider.close()
        await self.vector_index.close()
        await self.item_store.close()
        logger.info("Embedding worker cleanup completed")

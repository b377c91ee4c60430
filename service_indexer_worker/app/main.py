"""Indexer worker main application (Celery).

Tasks
- ``memoria.embed_item``: embed one item published by the search service
- ``memoria.reindex_owner``: embed an owner's missing (or all) items, guarded
  by a per-owner redis lock so concurrent requests don't duplicate work
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis
import structlog
from celery import Celery
from celery.signals import worker_ready, worker_shutdown
from redis.lock import Lock

from memoria.common.config import IndexerConfig
from memoria.common.jobs import EmbeddingJob
from memoria.common.logging import configure_logging
from memoria.common.metrics import MetricsCollector
from memoria.embeddings.base import EmbeddingProviderError
from memoria.embeddings.factory import create_embedding_provider
from memoria.items.factory import create_item_store
from memoria.vector_store.base import VectorStoreError
from memoria.vector_store.factory import create_vector_index

from .workers.embedding_worker import EmbeddingJobFailedError, EmbeddingWorker

logger = structlog.get_logger("indexer_worker")

_bootstrap_config = IndexerConfig()

celery_app = Celery(
    "memoria_indexer",
    broker=_bootstrap_config.memoria_redis_url,
    backend=_bootstrap_config.memoria_redis_url,
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)

RETRYABLE_TASK_ERRORS = (EmbeddingJobFailedError, EmbeddingProviderError, VectorStoreError)

# Global runtime state
indexer_config: Optional[IndexerConfig] = None
redis_client: Optional[redis.Redis] = None
metrics_collector: Optional[MetricsCollector] = None


def _ensure_config() -> IndexerConfig:
    """Return the initialized IndexerConfig, loading it lazily."""
    global indexer_config
    if indexer_config is None:
        indexer_config = IndexerConfig()
    return indexer_config


def _get_metrics() -> MetricsCollector:
    """Return process-wide metrics collector."""
    global metrics_collector
    if metrics_collector is None:
        metrics_collector = MetricsCollector("indexer-worker")
    return metrics_collector


def build_worker(config: IndexerConfig, metrics: Optional[MetricsCollector] = None) -> EmbeddingWorker:
    """Build an ``EmbeddingWorker`` with fresh backends from configuration."""
    return EmbeddingWorker(
        item_store=create_item_store(config),
        vector_index=create_vector_index(config),
        embedding_provider=create_embedding_provider(config),
        metrics=metrics,
        max_attempts=config.memoria_embedding_max_attempts,
        base_delay=config.memoria_embedding_retry_base_delay,
        max_delay=config.memoria_embedding_retry_max_delay,
        batch_size=config.memoria_embedding_batch_size,
    )


def _run_with_worker(
    coro_factory: Callable[[EmbeddingWorker], Awaitable[Dict[str, Any]]],
) -> Dict[str, Any]:
    """Run an async worker operation inside a managed lifecycle."""
    config = _ensure_config()

    async def _runner() -> Dict[str, Any]:
        worker = build_worker(config, _get_metrics())
        try:
            return await coro_factory(worker)
        finally:
            await worker.cleanup()

    return asyncio.run(_runner())


def _acquire_reindex_lock(owner_id: str) -> Tuple[Optional[Lock], str]:
    """Attempt to acquire the per-owner reindex lock.

    Returns a tuple of (lock, status) where status is one of:
    - "acquired": lock acquired successfully
    - "blocked": lock already held elsewhere
    - "unavailable": Redis client missing
    - "error": Redis error occurred
    """
    if redis_client is None:
        logger.warning("Redis client not available; reindex runs unguarded", owner_id=owner_id)
        return None, "unavailable"

    lock_name = f"memoria:reindex:{owner_id}"
    try:
        lock = redis_client.lock(
            lock_name,
            timeout=_ensure_config().memoria_reindex_lock_timeout,
            blocking=False,
            thread_local=False,
        )
        if not lock.acquire(blocking=False):
            logger.info("Reindex lock already held; task will be skipped", owner_id=owner_id)
            return None, "blocked"
        logger.info("Acquired reindex lock", owner_id=owner_id, lock_name=lock_name)
        return lock, "acquired"
    except redis.RedisError as exc:
        logger.warning(
            "Failed to acquire reindex lock; continuing without guard",
            owner_id=owner_id,
            error=str(exc),
        )
        return None, "error"


@worker_ready.connect
def worker_ready_handler(sender=None, **kwargs):
    """Handle worker ready signal."""
    global redis_client

    config = _ensure_config()
    configure_logging("indexer-worker", config.memoria_log_level, config.memoria_log_format)
    logger.info("Starting indexer worker")
    _get_metrics()

    try:
        redis_client = redis.from_url(config.memoria_redis_url)
        redis_client.ping()
        logger.info("Redis client initialized for reindex locks")
    except redis.RedisError as exc:
        redis_client = None
        logger.warning("Failed to initialize Redis client; reindex locks disabled", error=str(exc))

    logger.info("Indexer worker started successfully")


@worker_shutdown.connect
def worker_shutdown_handler(sender=None, **kwargs):
    """Handle worker shutdown signal."""
    global redis_client

    if redis_client:
        try:
            redis_client.close()
        except redis.RedisError as exc:
            logger.warning("Failed to close Redis client", error=str(exc))
        finally:
            redis_client = None

    logger.info("Indexer worker shutdown complete")


@celery_app.task(
    bind=True,
    name=_bootstrap_config.memoria_embed_task_name,
    autoretry_for=RETRYABLE_TASK_ERRORS,
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    max_retries=5,
)
def embed_item(self, job: Dict[str, Any]) -> Dict[str, Any]:
    """Embed one item. Raising a retryable error re-queues it with backoff."""
    embedding_job = EmbeddingJob.model_validate(job)
    start_time = time.perf_counter()

    logger.info(
        "Starting embedding task",
        task_id=self.request.id,
        item_id=embedding_job.item_id,
        owner_id=embedding_job.owner_id,
        retry_count=self.request.retries,
    )

    def _embed(worker: EmbeddingWorker) -> Awaitable[Dict[str, Any]]:
        return worker.embed_items(embedding_job.owner_id, [embedding_job.item_id])

    result = _run_with_worker(_embed)

    logger.info(
        "Embedding task completed",
        task_id=self.request.id,
        item_id=embedding_job.item_id,
        result=result,
        duration_seconds=round(time.perf_counter() - start_time, 3),
    )
    if result["failed"]:
        raise EmbeddingJobFailedError(f"Embedding failed for item {embedding_job.item_id}")
    return result


@celery_app.task(bind=True, name=_bootstrap_config.memoria_reindex_task_name)
def reindex_owner(self, owner_id: str, force: bool = False) -> Dict[str, Any]:
    """Embed every item of an owner that has no vector yet (all with ``force``)."""
    lock, lock_status = _acquire_reindex_lock(owner_id)
    if lock_status == "blocked":
        return {"status": "skipped", "reason": "already_in_progress", "owner_id": owner_id}

    try:
        logger.info("Starting reindex task", task_id=self.request.id, owner_id=owner_id, force=force)

        def _reindex(worker: EmbeddingWorker) -> Awaitable[Dict[str, Any]]:
            return worker.reindex_owner(owner_id, force=force)

        result = _run_with_worker(_reindex)
        result["status"] = "completed"
        logger.info("Reindex task completed", task_id=self.request.id, owner_id=owner_id, result=result)
        return result

    except Exception as e:
        logger.error("Reindex task failed", task_id=self.request.id, owner_id=owner_id, error=str(e))
        raise
    finally:
        if lock:
            try:
                lock.release()
            except redis.RedisError as exc:
                logger.warning("Failed to release reindex lock", owner_id=owner_id, error=str(exc))


if __name__ == "__main__":
    celery_app.worker_main([
        "worker",
        "--loglevel=info",
        "--concurrency=4",
    ])

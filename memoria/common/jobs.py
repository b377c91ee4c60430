"""Background embedding jobs.

Item writes never wait for embedding generation. Instead they hand an
``EmbeddingJob`` to a ``JobDispatcher``:

- ``InlineJobDispatcher``: in-process asyncio queue drained by a worker task
  owned by the service lifespan. Good for local runs and tests.
- ``CeleryJobDispatcher``: publishes the ``memoria.embed_item`` task to the
  redis broker, consumed by the indexer worker (at-least-once).
"""

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from celery import Celery
from pydantic import BaseModel, Field

from .config import BaseConfig

logger = structlog.get_logger("common.jobs")

JobHandler = Callable[[str, List[str]], Awaitable[None]]


class EmbeddingJob(BaseModel):
    """Request to (re)compute one item's embedding."""

    item_id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    attempt: int = Field(default=0, ge=0)
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class JobDispatchError(Exception):
    """A job could not be handed to the background queue."""
    pass


class JobDispatcher(ABC):
    """Hands embedding jobs to whatever runs them."""

    @abstractmethod
    async def dispatch(self, job: EmbeddingJob) -> None:
        """Enqueue a job; raises ``JobDispatchError`` on failure."""
        pass

    async def start(self, handler: Optional[JobHandler] = None) -> None:
        """Begin processing, if this dispatcher processes jobs itself."""
        pass

    async def close(self) -> None:
        pass


class InlineJobDispatcher(JobDispatcher):
    """Queue jobs in memory and run them on a background task.

    Jobs are drained in small batches and grouped by owner before calling
    the handler with ``(owner_id, item_ids)``.
    """

    def __init__(self, max_queue_size: int = 1000, batch_size: int = 16):
        self.batch_size = batch_size
        self._queue: "asyncio.Queue[EmbeddingJob]" = asyncio.Queue(maxsize=max_queue_size)
        self._handler: Optional[JobHandler] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def dispatch(self, job: EmbeddingJob) -> None:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull as e:
            raise JobDispatchError("Embedding queue is full") from e
        logger.debug("Queued embedding job", item_id=job.item_id, owner_id=job.owner_id)

    async def start(self, handler: Optional[JobHandler] = None) -> None:
        if handler is None:
            raise ValueError("InlineJobDispatcher needs a handler")
        if self._task and not self._task.done():
            logger.info("Inline embedding worker already running")
            return
        self._handler = handler
        self._task = asyncio.create_task(self._consume(), name="memoria-inline-embedder")
        logger.info("Inline embedding worker started")

    async def _consume(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self.batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())

            by_owner: Dict[str, List[str]] = OrderedDict()
            for job in batch:
                ids = by_owner.setdefault(job.owner_id, [])
                if job.item_id not in ids:
                    ids.append(job.item_id)

            try:
                for owner_id, item_ids in by_owner.items():
                    try:
                        await self._handler(owner_id, item_ids)
                    except Exception as e:
                        logger.error(
                            "Inline embedding batch failed",
                            owner_id=owner_id,
                            item_count=len(item_ids),
                            error=str(e),
                        )
            finally:
                for _ in batch:
                    self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    async def close(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Inline embedding worker stopped", dropped_jobs=self._queue.qsize())


class CeleryJobDispatcher(JobDispatcher):
    """Publish jobs as Celery tasks for the indexer worker."""

    def __init__(
        self,
        broker_url: str,
        task_name: str = "memoria.embed_item",
        celery_app: Optional[Celery] = None,
    ):
        self.task_name = task_name
        self._celery = celery_app or Celery("memoria-search", broker=broker_url)

    async def dispatch(self, job: EmbeddingJob) -> None:
        try:
            await asyncio.to_thread(
                self._celery.send_task,
                self.task_name,
                kwargs={"job": job.model_dump(mode="json")},
            )
        except Exception as e:
            logger.error("Failed to publish embedding task", item_id=job.item_id, error=str(e))
            raise JobDispatchError(f"Failed to publish embedding task: {e}") from e
        logger.debug("Published embedding task", item_id=job.item_id, task=self.task_name)

    async def close(self) -> None:
        await asyncio.to_thread(self._celery.close)


def create_job_dispatcher(config: BaseConfig) -> JobDispatcher:
    """Create the dispatcher selected by ``MEMORIA_JOB_BACKEND``."""
    backend = config.memoria_job_backend
    if backend == "inline":
        return InlineJobDispatcher(batch_size=config.memoria_embedding_batch_size)
    if backend == "celery":
        return CeleryJobDispatcher(
            broker_url=config.memoria_redis_url,
            task_name=config.memoria_embed_task_name,
        )
    raise ValueError(f"Unsupported job backend: {backend}")

"""Search manager for hybrid lexical and semantic retrieval.

Public entry point of the search service. For one call it:

1. normalizes the query text into clean text plus structured filters
2. dispatches the lexical leg, the vector leg, or both concurrently
3. fuses the legs (hybrid) or sorts the single leg
4. caps the result list and attaches match reasons

Failure policy
- lexical mode: a lexical failure is fatal
- semantic mode: an embedding or index failure is fatal, never an empty list
- hybrid mode: a vector-leg failure (including timeout) degrades to the
  lexical results and flags the response; a lexical failure is fatal; both
  failing is reported as ``RetrievalUnavailableError``

All collaborators are injected. ``create_search_manager`` is the
composition root that builds them from configuration.
"""

import asyncio
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from memoria.common.config import SearchConfig
from memoria.common.jobs import EmbeddingJob, JobDispatcher, JobHandler, create_job_dispatcher
from memoria.common.metrics import MetricsCollector
from memoria.embeddings.base import EmbeddingProvider, EmbeddingProviderError
from memoria.embeddings.factory import create_embedding_provider
from memoria.items.base import ItemStore
from memoria.items.factory import create_item_store
from memoria.items.models import ContentType, DateRange, Item, ItemFilters
from memoria.vector_store.base import VectorIndex, VectorStoreError
from memoria.vector_store.factory import create_vector_index

from ..intelligence.query_understanding import NormalizedQuery, QueryNormalizer
from ..models import ScoredResult, SearchMode, SearchOutcome
from ..ranking.fusion import WeightedScoreFusion, clamp_score
from ..retrievers.lexical import LexicalMatcher
from .exceptions import (
    InvalidQueryError,
    LexicalSearchError,
    RetrievalUnavailableError,
    SearchError,
    VectorSearchError,
    VectorSearchTimeoutError,
)

logger = structlog.get_logger("search_service.search_manager")

SEMANTIC_REASON = "Semantic match"


class VectorLegFailure(Exception):
    """Internal wrapper recording which stage of the vector leg failed."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class SearchManager:
    """Runs owner-scoped searches and keeps the vector index in step with items.

    Responsibilities
    - Normalize queries and resolve explicit vs parsed filters
    - Run lexical and vector legs with the mode's failure policy
    - Fuse and cap results
    - Store and delete items, dispatching background embedding jobs
    """

    def __init__(
        self,
        config: SearchConfig,
        item_store: ItemStore,
        vector_index: VectorIndex,
        embedding_provider: EmbeddingProvider,
        job_dispatcher: Optional[JobDispatcher] = None,
        job_handler: Optional[JobHandler] = None,
        metrics: Optional[MetricsCollector] = None,
        normalizer: Optional[QueryNormalizer] = None,
        lexical_matcher: Optional[LexicalMatcher] = None,
        fusion: Optional[WeightedScoreFusion] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Construct a search manager.

        Parameters
        - config: ``SearchConfig`` with weights, limits and timeouts
        - item_store / vector_index / embedding_provider: retrieval backends
        - job_dispatcher: Where embedding jobs go; ``None`` disables them
        - job_handler: Callback for dispatchers that process jobs in-process
        - metrics: Optional collector for search and leg-failure metrics
        - normalizer / lexical_matcher / fusion: Override the defaults built
          from ``config``
        - http_client: Shared client closed on ``cleanup``
        """
        self.config = config
        self.item_store = item_store
        self.vector_index = vector_index
        self.embedding_provider = embedding_provider
        self.job_dispatcher = job_dispatcher
        self.job_handler = job_handler
        self.metrics = metrics
        self.http_client = http_client

        self.normalizer = normalizer or QueryNormalizer()
        self.lexical_matcher = lexical_matcher or LexicalMatcher(
            item_store,
            title_weight=config.memoria_search_title_weight,
            body_weight=config.memoria_search_body_weight,
            tag_weight=config.memoria_search_tag_weight,
            filter_match_score=config.memoria_search_filter_match_score,
        )
        self.fusion = fusion or WeightedScoreFusion(
            vector_weight=config.memoria_search_vector_weight,
            lexical_weight=config.memoria_search_lexical_weight,
        )

    async def initialize(self):
        """Provision storage schemas and start in-process job handling."""
        try:
            for backend in (self.item_store, self.vector_index):
                ensure_schema = getattr(backend, "ensure_schema", None)
                if ensure_schema is not None:
                    await ensure_schema()

            if self.job_dispatcher is not None:
                await self.job_dispatcher.start(self.job_handler)

            logger.info("Search manager initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize search manager", error=str(e))
            raise

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.memoria_search_default_limit
        if limit < 1:
            raise InvalidQueryError("limit must be at least 1")
        return min(limit, self.config.memoria_search_max_limit)

    @staticmethod
    def _resolve_filters(
        normalized: NormalizedQuery,
        content_type: Optional[Union[ContentType, str]],
        date_range: Optional[DateRange],
        tags: Optional[Sequence[str]],
    ) -> ItemFilters:
        """Explicit request filters override those parsed from text."""
        try:
            explicit_type = ContentType(content_type) if content_type else None
        except ValueError:
            raise InvalidQueryError(f"Unknown content type: {content_type}")
        parsed = normalized.to_filters()
        return replace(
            parsed,
            content_type=explicit_type or parsed.content_type,
            date_range=date_range or parsed.date_range,
            tags=tuple(tags) if tags else parsed.tags,
        )

    async def search(
        self,
        owner_id: str,
        query: Optional[str],
        mode: Union[SearchMode, str] = SearchMode.HYBRID,
        limit: Optional[int] = None,
        content_type: Optional[Union[ContentType, str]] = None,
        date_range: Optional[DateRange] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> SearchOutcome:
        """Search one owner's items.

        Returns a ``SearchOutcome`` whose results never exceed ``limit``.
        Scores are in [0, 1]; their meaning depends on the mode (lexical
        field score, cosine similarity, or fused score).

        Raises
        - ``InvalidQueryError`` for malformed input
        - ``LexicalSearchError`` / ``VectorSearchError`` /
          ``RetrievalUnavailableError`` when required legs fail
        """
        start_time = time.perf_counter()
        try:
            mode = SearchMode(mode)
        except ValueError:
            raise InvalidQueryError(f"Unknown search mode: {mode}")

        try:
            if not owner_id:
                raise InvalidQueryError("owner_id is required")
            capped = self._resolve_limit(limit)

            normalized = self.normalizer.normalize(query)
            filters = self._resolve_filters(normalized, content_type, date_range, tags)
            text = normalized.clean_query

            if not text and not filters.has_structured_filters():
                raise InvalidQueryError("query text or at least one filter is required")

            if mode == SearchMode.LEXICAL:
                outcome = await self._search_lexical(owner_id, text, filters, capped)
            elif mode == SearchMode.SEMANTIC:
                outcome = await self._search_semantic(owner_id, text, filters, capped)
            else:
                outcome = await self._search_hybrid(owner_id, text, filters, capped)

        except SearchError as e:
            duration = time.perf_counter() - start_time
            self._record_search(mode, "error", duration)
            log = logger.info if isinstance(e, InvalidQueryError) else logger.error
            log(
                "Search failed",
                owner_id=owner_id,
                mode=mode.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        duration = time.perf_counter() - start_time
        outcome.latency_ms = duration * 1000
        outcome.query_info = normalized.describe()
        outcome.query_info["filters"] = {
            "content_type": filters.content_type.value if filters.content_type else None,
            "tags": list(filters.tags),
        }
        self._record_search(mode, "degraded" if outcome.degraded else "ok", duration)

        logger.info(
            "Search completed",
            owner_id=owner_id,
            mode=mode.value,
            results_count=outcome.count,
            degraded=outcome.degraded,
            latency_ms=round(outcome.latency_ms, 2),
        )
        return outcome

    def _candidate_pool(self, limit: int) -> int:
        return limit * self.config.memoria_search_candidate_multiplier

    @staticmethod
    def _sort_by_score(results: List[ScoredResult], limit: int) -> List[ScoredResult]:
        # sorted() is stable, so equal scores keep retrieval order.
        return sorted(results, key=lambda r: -r.score)[:limit]

    async def _search_lexical(
        self,
        owner_id: str,
        text: str,
        filters: ItemFilters,
        limit: int,
    ) -> SearchOutcome:
        lexical = await self._run_lexical(owner_id, text, filters, self._candidate_pool(limit))
        return SearchOutcome(results=self._sort_by_score(lexical, limit), mode=SearchMode.LEXICAL)

    async def _search_semantic(
        self,
        owner_id: str,
        text: str,
        filters: ItemFilters,
        limit: int,
    ) -> SearchOutcome:
        if not text:
            raise InvalidQueryError("semantic search needs query text")

        try:
            vector = await self._run_vector(owner_id, text, filters, limit)
        except VectorLegFailure as failure:
            self._record_leg_failure("vector", failure.stage)
            if failure.stage == "timeout":
                raise VectorSearchTimeoutError(
                    "vector search timed out"
                ) from failure.cause
            raise VectorSearchError(
                f"vector search failed at {failure.stage}: {failure.cause}"
            ) from failure.cause

        results = [self._clamped(result) for result in vector[:limit]]
        return SearchOutcome(results=results, mode=SearchMode.SEMANTIC)

    async def _search_hybrid(
        self,
        owner_id: str,
        text: str,
        filters: ItemFilters,
        limit: int,
    ) -> SearchOutcome:
        pool = self._candidate_pool(limit)

        if not text:
            # Filter-only: there is nothing to embed, so this is not degraded.
            lexical = await self._run_lexical(owner_id, text, filters, pool)
            return SearchOutcome(results=self._sort_by_score(lexical, limit), mode=SearchMode.HYBRID)

        lexical_outcome, vector_outcome = await asyncio.gather(
            self._run_lexical(owner_id, text, filters, pool),
            self._run_vector(owner_id, text, filters, pool),
            return_exceptions=True,
        )
        for outcome in (lexical_outcome, vector_outcome):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        lexical_failed = isinstance(lexical_outcome, Exception)
        vector_failed = isinstance(vector_outcome, Exception)

        if vector_failed:
            stage = vector_outcome.stage if isinstance(vector_outcome, VectorLegFailure) else "unknown"
            self._record_leg_failure("vector", stage)

        if lexical_failed and vector_failed:
            raise RetrievalUnavailableError(
                "no retrieval leg succeeded"
            ) from lexical_outcome
        if lexical_failed:
            raise lexical_outcome

        if vector_failed:
            logger.warning(
                "Vector leg failed, degrading to lexical",
                owner_id=owner_id,
                stage=stage,
                error=str(vector_outcome),
            )
            return SearchOutcome(
                results=self._sort_by_score(lexical_outcome, limit),
                mode=SearchMode.HYBRID,
                degraded=True,
                degraded_reason=f"vector search unavailable ({stage})",
            )

        fused = self.fusion.fuse(lexical_outcome, vector_outcome, limit=limit)
        return SearchOutcome(results=fused, mode=SearchMode.HYBRID)

    async def _run_lexical(
        self,
        owner_id: str,
        text: str,
        filters: ItemFilters,
        pool: int,
    ) -> List[ScoredResult]:
        try:
            return await self.lexical_matcher.match(owner_id, text, filters, limit=pool)
        except Exception as e:
            self._record_leg_failure("lexical", "store")
            logger.error("Lexical leg failed", owner_id=owner_id, error=str(e))
            raise LexicalSearchError(f"lexical search failed: {e}") from e

    async def _run_vector(
        self,
        owner_id: str,
        text: str,
        filters: ItemFilters,
        k: int,
    ) -> List[ScoredResult]:
        timeout = self.config.memoria_search_vector_timeout_seconds
        try:
            return await asyncio.wait_for(self._vector_leg(owner_id, text, filters, k), timeout)
        except asyncio.TimeoutError as e:
            raise VectorLegFailure("timeout", e) from e

    async def _vector_leg(
        self,
        owner_id: str,
        text: str,
        filters: ItemFilters,
        k: int,
    ) -> List[ScoredResult]:
        """Embed the query, search the index, hydrate and filter the hits.

        Hits whose item is gone (deleted, or owned by someone else) are
        dropped; structured filters are applied after hydration.
        """
        try:
            query_vector = await self.embedding_provider.embed(text)
        except EmbeddingProviderError as e:
            raise VectorLegFailure("embedding", e) from e

        # Over-fetch when post-filters will discard some hits.
        if filters.has_structured_filters():
            k *= self.config.memoria_search_candidate_multiplier

        try:
            hits = await self.vector_index.query(owner_id, query_vector, k)
        except (VectorStoreError, ValueError) as e:
            raise VectorLegFailure("index", e) from e
        finally:
            self._record_vector_operation("query")

        try:
            items = await self.item_store.get_many(owner_id, [hit.item_id for hit in hits])
        except Exception as e:
            raise VectorLegFailure("store", e) from e
        by_id = {item.id: item for item in items}

        results = []
        for hit in hits:
            item = by_id.get(hit.item_id)
            if item is None or not filters.matches_structured(item):
                continue
            results.append(ScoredResult(item=item, score=hit.score, reason=SEMANTIC_REASON))
        return results

    @staticmethod
    def _clamped(result: ScoredResult) -> ScoredResult:
        return ScoredResult(item=result.item, score=clamp_score(result.score), reason=result.reason)

    # ------------------------------------------------------------------
    # Item lifecycle
    # ------------------------------------------------------------------

    async def index_item(self, item: Item) -> Item:
        """Store a new item and queue its embedding.

        The write never waits for, or fails because of, embedding
        generation; until the job lands the item is only lexically findable.
        """
        stored = await self.item_store.add(item)
        await self._dispatch(EmbeddingJob(item_id=stored.id, owner_id=stored.owner_id))
        logger.info("Item indexed", item_id=stored.id, owner_id=stored.owner_id)
        return stored

    async def _dispatch(self, job: EmbeddingJob) -> bool:
        if self.job_dispatcher is None:
            return False
        try:
            await self.job_dispatcher.dispatch(job)
            return True
        except Exception as e:
            logger.warning(
                "Failed to dispatch embedding job",
                item_id=job.item_id,
                owner_id=job.owner_id,
                error=str(e),
            )
            return False

    async def remove_item(self, owner_id: str, item_id: str) -> bool:
        """Delete an item and its embedding.

        Returns ``False`` when the owner has no such item. A failed vector
        removal is logged only: stale vectors cannot surface because vector
        hits are hydrated through the owner-scoped item store.
        """
        deleted = await self.item_store.delete(owner_id, item_id)
        if not deleted:
            return False

        try:
            await self.vector_index.remove(item_id)
            self._record_vector_operation("remove")
        except Exception as e:
            logger.warning("Failed to remove item embedding", item_id=item_id, error=str(e))

        logger.info("Item removed", item_id=item_id, owner_id=owner_id)
        return True

    async def get_index_stats(self, owner_id: str) -> Dict[str, Any]:
        """Counts of items, embeddings and items still waiting for one."""
        items = await self.item_store.count(owner_id)
        stats: Dict[str, Any] = {"owner_id": owner_id, "items": items}
        try:
            embeddings = await self.vector_index.count(owner_id)
            stats["embeddings"] = embeddings
            stats["pending"] = max(items - embeddings, 0)
        except VectorStoreError as e:
            logger.warning("Vector index unavailable for stats", owner_id=owner_id, error=str(e))
            stats["embeddings"] = None
            stats["pending"] = None
            stats["vector_index_error"] = str(e)

        queued = getattr(self.job_dispatcher, "pending", None)
        if queued is not None:
            stats["queued_jobs"] = queued
        return stats

    async def reindex(self, owner_id: str, force: bool = False) -> Dict[str, Any]:
        """Queue embedding jobs for the owner's items.

        Without ``force`` only items lacking an embedding are queued.
        """
        items = await self.item_store.list_by_owner(owner_id)
        queued = skipped = failed = 0

        for item in items:
            if not force:
                try:
                    if await self.vector_index.get(owner_id, item.id) is not None:
                        skipped += 1
                        continue
                except VectorStoreError as e:
                    logger.warning("Cannot check existing embedding", item_id=item.id, error=str(e))
            if await self._dispatch(EmbeddingJob(item_id=item.id, owner_id=owner_id)):
                queued += 1
            else:
                failed += 1

        logger.info(
            "Reindex requested",
            owner_id=owner_id,
            force=force,
            queued=queued,
            skipped=skipped,
            failed=failed,
        )
        return {"owner_id": owner_id, "queued": queued, "skipped": skipped, "failed": failed}

    # ------------------------------------------------------------------
    # Lifecycle and health
    # ------------------------------------------------------------------

    async def health_check(self) -> Dict[str, Any]:
        """Component health. Only the item store is required for ``healthy``."""
        item_store_ok = await self.item_store.health_check()
        vector_index_ok = await self.vector_index.health_check()
        breaker = self.embedding_provider.breaker.get_stats()

        if not item_store_ok:
            status = "unhealthy"
        elif not vector_index_ok or breaker["state"] != "closed":
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "item_store": item_store_ok,
            "vector_index": vector_index_ok,
            "embedding_provider": breaker,
        }

    async def cleanup(self):
        """Stop job handling and release every backend."""
        try:
            if self.job_dispatcher is not None:
                await self.job_dispatcher.close()

            await self.embedding_provider.close()
            await self.vector_index.close()
            await self.item_store.close()

            if self.http_client is not None:
                await self.http_client.aclose()

            logger.info("Search manager cleanup completed")

        except Exception as e:
            logger.error("Search manager cleanup failed", error=str(e))

    def _record_search(self, mode: SearchMode, outcome: str, duration: float) -> None:
        if self.metrics:
            self.metrics.record_search(mode.value, outcome, duration)

    def _record_leg_failure(self, leg: str, stage: str) -> None:
        if self.metrics:
            self.metrics.record_leg_failure(leg, stage)

    def _record_vector_operation(self, operation: str) -> None:
        if self.metrics:
            self.metrics.record_vector_index_operation(operation)


def create_search_manager(
    config: SearchConfig,
    metrics: Optional[MetricsCollector] = None,
) -> SearchManager:
    """Build a ``SearchManager`` and its collaborators from configuration.

    The HTTP client, stores and dispatcher created here are owned by the
    returned manager and released by ``cleanup``.
    """
    http_client = httpx.AsyncClient(timeout=config.memoria_embedding_timeout_seconds)
    item_store = create_item_store(config)
    vector_index = create_vector_index(config)
    embedding_provider = create_embedding_provider(config, client=http_client)
    job_dispatcher = create_job_dispatcher(config)

    job_handler: Optional[JobHandler] = None
    if config.memoria_job_backend == "inline":
        # Deferred so the search service only needs the worker in inline mode.
        from service_indexer_worker.app.workers.embedding_worker import EmbeddingWorker

        worker = EmbeddingWorker(
            item_store=item_store,
            vector_index=vector_index,
            embedding_provider=embedding_provider,
            metrics=metrics,
            max_attempts=config.memoria_embedding_max_attempts,
            base_delay=config.memoria_embedding_retry_base_delay,
            max_delay=config.memoria_embedding_retry_max_delay,
            batch_size=config.memoria_embedding_batch_size,
        )
        job_handler = worker.embed_items

    return SearchManager(
        config=config,
        item_store=item_store,
        vector_index=vector_index,
        embedding_provider=embedding_provider,
        job_dispatcher=job_dispatcher,
        job_handler=job_handler,
        metrics=metrics,
        http_client=http_client,
    )

"""Tests for the search manager."""

import asyncio
from datetime import datetime, timezone

import pytest

from memoria.common.config import SearchConfig
from memoria.common.jobs import InlineJobDispatcher
from memoria.items.memory import InMemoryItemStore
from memoria.items.models import ContentType, DateRange, Item
from memoria.vector_store.base import VectorHit
from memoria.vector_store.memory import InMemoryVectorIndex
from service_indexer_worker.app.workers.embedding_worker import EmbeddingWorker
from service_search.app.hybrid.exceptions import (
    InvalidQueryError,
    LexicalSearchError,
    RetrievalUnavailableError,
    VectorSearchError,
    VectorSearchTimeoutError,
)
from service_search.app.intelligence.query_understanding import QueryNormalizer
from service_search.app.models import SearchMode

from .conftest import (
    DIMENSION,
    FIXED_NOW,
    BrokenItemStore,
    FakeEmbeddingProvider,
    RecordingDispatcher,
    ScriptedVectorIndex,
    UnreachableVectorIndex,
    keyword_vector,
)


class ListingFailsItemStore(InMemoryItemStore):
    """Store that can hydrate by id but cannot list."""

    async def list_by_owner(self, owner_id, filters=None, limit=None):
        raise ConnectionError("listing unavailable")


class RendezvousItemStore(InMemoryItemStore):
    """Listing waits until the vector index has been queried."""

    def __init__(self, items, listed: asyncio.Event, queried: asyncio.Event):
        super().__init__(items)
        self.listed = listed
        self.queried = queried

    async def list_by_owner(self, owner_id, filters=None, limit=None):
        self.listed.set()
        await asyncio.wait_for(self.queried.wait(), timeout=0.2)
        return await super().list_by_owner(owner_id, filters, limit)


class RendezvousVectorIndex(InMemoryVectorIndex):
    """Queries wait until the item store has been listed."""

    def __init__(self, listed: asyncio.Event, queried: asyncio.Event):
        super().__init__(DIMENSION)
        self.listed = listed
        self.queried = queried

    async def query(self, owner_id, query_vector, k):
        self.queried.set()
        await asyncio.wait_for(self.listed.wait(), timeout=0.2)
        return await super().query(owner_id, query_vector, k)


async def embed_titles(index, *items):
    for item in items:
        await index.upsert(item.owner_id, item.id, keyword_vector(item.title))


# ----------------------------------------------------------------------
# Modes
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lexical_search_matches_title(make_manager, item_store):
    """Lexical 'rust' finds A through its title."""
    manager = make_manager(item_store)

    outcome = await manager.search("u1", "rust", mode=SearchMode.LEXICAL)

    assert [r.item.id for r in outcome.results] == ["A"]
    assert "title" in outcome.results[0].reason
    assert outcome.mode == SearchMode.LEXICAL
    assert not outcome.degraded


@pytest.mark.asyncio
async def test_lexical_search_sorts_by_score(make_manager, item_store):
    """A title match outranks a newer body-only match."""
    await item_store.add(Item(
        id="C",
        owner_id="u1",
        title="Weekend plans",
        body="learn rust",
        content_type=ContentType.TODO,
        created_at=datetime(2024, 5, 9, tzinfo=timezone.utc),
    ))
    manager = make_manager(item_store)

    outcome = await manager.search("u1", "rust", mode="lexical")

    assert [r.item.id for r in outcome.results] == ["A", "C"]
    assert [r.score for r in outcome.results] == [pytest.approx(0.4), pytest.approx(0.3)]


@pytest.mark.asyncio
async def test_hybrid_search_fuses_legs(make_manager, item_store):
    """Vector [(B, 0.9), (A, 0.4)] and lexical [(A, 0.4)] give [B 0.63, A 0.40]."""
    index = ScriptedVectorIndex({"u1": [VectorHit("B", 0.9), VectorHit("A", 0.4)]})
    manager = make_manager(item_store, vector_index=index)

    outcome = await manager.search("u1", "rust", mode=SearchMode.HYBRID)

    assert [r.item.id for r in outcome.results] == ["B", "A"]
    assert outcome.results[0].score == pytest.approx(0.63)
    assert outcome.results[1].score == pytest.approx(0.40)
    assert outcome.results[1].reason == "Semantic match; Matched in title"
    assert not outcome.degraded


@pytest.mark.asyncio
async def test_hybrid_with_empty_vector_index_still_fuses(make_manager, item_store):
    """An empty vector result is not a failure: lexical scores are weighted."""
    manager = make_manager(item_store)

    outcome = await manager.search("u1", "rust")

    assert [r.item.id for r in outcome.results] == ["A"]
    assert outcome.results[0].score == pytest.approx(0.3 * 0.4)
    assert not outcome.degraded


@pytest.mark.asyncio
async def test_semantic_search_ranks_by_similarity(make_manager, item_store, item_a, item_b):
    """Semantic mode returns cosine scores from the index."""
    index = InMemoryVectorIndex(DIMENSION)
    await embed_titles(index, item_a, item_b)
    manager = make_manager(item_store, vector_index=index)

    outcome = await manager.search("u1", "bread", mode=SearchMode.SEMANTIC)

    assert [r.item.id for r in outcome.results] == ["B", "A"]
    assert outcome.results[0].score == pytest.approx(1.0, abs=1e-3)
    assert outcome.results[0].reason == "Semantic match"
    assert all(0.0 <= r.score <= 1.0 for r in outcome.results)


@pytest.mark.asyncio
async def test_semantic_search_applies_structured_filters(make_manager, item_store, item_a, item_b):
    """Vector hits failing the type filter are dropped after hydration."""
    index = InMemoryVectorIndex(DIMENSION)
    await embed_titles(index, item_a, item_b)
    manager = make_manager(item_store, vector_index=index)

    outcome = await manager.search("u1", "rust", mode="semantic", content_type="note")

    assert [r.item.id for r in outcome.results] == ["B"]


@pytest.mark.asyncio
async def test_semantic_search_needs_text(make_manager, item_store):
    """Filter-only input cannot be embedded."""
    manager = make_manager(item_store)
    with pytest.raises(InvalidQueryError):
        await manager.search("u1", "", mode="semantic", content_type="note")


# ----------------------------------------------------------------------
# Failure policy
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_hybrid_degrades_when_index_fails(make_manager, item_store, metrics):
    """A broken vector index yields lexical results flagged as degraded."""
    manager = make_manager(item_store, vector_index=UnreachableVectorIndex(DIMENSION))

    outcome = await manager.search("u1", "rust")

    assert [r.item.id for r in outcome.results] == ["A"]
    assert outcome.results[0].score == pytest.approx(0.4)
    assert outcome.degraded
    assert outcome.degraded_reason == "vector search unavailable (index)"

    exported = metrics.get_metrics()
    assert 'memoria_search_leg_failures_total{leg="vector",stage="index"} 1.0' in exported
    assert 'memoria_search_requests_total{mode="hybrid",outcome="degraded"} 1.0' in exported


@pytest.mark.asyncio
async def test_hybrid_degrades_when_embedding_fails(make_manager, item_store):
    """An embedding provider failure also degrades hybrid search."""
    manager = make_manager(item_store, provider=FakeEmbeddingProvider(always_fail=True))

    outcome = await manager.search("u1", "rust")

    assert [r.item.id for r in outcome.results] == ["A"]
    assert outcome.degraded_reason == "vector search unavailable (embedding)"


@pytest.mark.asyncio
async def test_hybrid_degrades_on_vector_timeout(make_manager, item_store):
    """A vector leg slower than its timeout is abandoned."""
    config = SearchConfig(memoria_search_vector_timeout_seconds=0.05)
    manager = make_manager(item_store, provider=FakeEmbeddingProvider(delay=1.0), config=config)

    outcome = await manager.search("u1", "rust")

    assert [r.item.id for r in outcome.results] == ["A"]
    assert outcome.degraded_reason == "vector search unavailable (timeout)"


@pytest.mark.asyncio
async def test_semantic_propagates_embedding_failure(make_manager, item_store):
    """Semantic mode reports a broken provider instead of returning nothing."""
    manager = make_manager(item_store, provider=FakeEmbeddingProvider(always_fail=True))

    with pytest.raises(VectorSearchError) as exc_info:
        await manager.search("u1", "rust", mode=SearchMode.SEMANTIC)
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_semantic_propagates_index_failure(make_manager, item_store):
    """Semantic mode reports a broken index."""
    manager = make_manager(item_store, vector_index=UnreachableVectorIndex(DIMENSION))

    with pytest.raises(VectorSearchError):
        await manager.search("u1", "rust", mode=SearchMode.SEMANTIC)


@pytest.mark.asyncio
async def test_semantic_timeout(make_manager, item_store):
    """A semantic search past its deadline raises the timeout error."""
    config = SearchConfig(memoria_search_vector_timeout_seconds=0.05)
    manager = make_manager(item_store, provider=FakeEmbeddingProvider(delay=1.0), config=config)

    with pytest.raises(VectorSearchTimeoutError) as exc_info:
        await manager.search("u1", "rust", mode=SearchMode.SEMANTIC)
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_lexical_failure_is_fatal(make_manager):
    """Lexical mode has nothing to fall back to."""
    manager = make_manager(BrokenItemStore())

    with pytest.raises(LexicalSearchError):
        await manager.search("u1", "rust", mode=SearchMode.LEXICAL)


@pytest.mark.asyncio
async def test_hybrid_lexical_failure_is_fatal(make_manager, item_a, item_b):
    """Hybrid mode never degrades to vector-only results."""
    store = ListingFailsItemStore([item_a, item_b])
    index = ScriptedVectorIndex({"u1": [VectorHit("A", 0.9)]})
    manager = make_manager(store, vector_index=index)

    with pytest.raises(LexicalSearchError):
        await manager.search("u1", "rust")


@pytest.mark.asyncio
async def test_hybrid_both_legs_failing(make_manager):
    """Both legs failing is reported as retrieval being unavailable."""
    manager = make_manager(BrokenItemStore(), vector_index=UnreachableVectorIndex(DIMENSION))

    with pytest.raises(RetrievalUnavailableError):
        await manager.search("u1", "rust")


# ----------------------------------------------------------------------
# Input handling
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invalid_input_is_rejected(make_manager, item_store):
    """Malformed searches raise InvalidQueryError."""
    manager = make_manager(item_store)

    with pytest.raises(InvalidQueryError):
        await manager.search("u1", "   ")
    with pytest.raises(InvalidQueryError):
        await manager.search("u1", "rust", mode="fuzzy")
    with pytest.raises(InvalidQueryError):
        await manager.search("", "rust")
    with pytest.raises(InvalidQueryError):
        await manager.search("u1", "rust", limit=0)
    with pytest.raises(InvalidQueryError):
        await manager.search("u1", "rust", content_type="podcast")


@pytest.mark.asyncio
async def test_limit_is_capped(make_manager):
    """Requests above the maximum are capped, never exceeded."""
    store = InMemoryItemStore([
        Item(id=f"i{n:02d}", owner_id="u1", title=f"rust {n}", content_type=ContentType.NOTE)
        for n in range(30)
    ])
    manager = make_manager(store)

    capped = await manager.search("u1", "rust", mode="lexical", limit=1000)
    default = await manager.search("u1", "rust", mode="lexical")
    small = await manager.search("u1", "rust", limit=3)

    assert capped.count == 20
    assert default.count == 10
    assert small.count == 3


@pytest.mark.asyncio
async def test_filter_only_hybrid_is_not_degraded(make_manager, item_store):
    """A type-only query lists matching items even with a dead vector leg."""
    manager = make_manager(item_store, vector_index=UnreachableVectorIndex(DIMENSION))

    outcome = await manager.search("u1", "notes")

    assert [r.item.id for r in outcome.results] == ["B"]
    assert outcome.results[0].score == 1.0
    assert outcome.results[0].reason == "Matched filters"
    assert not outcome.degraded
    assert outcome.query_info["content_type"] == "note"
    assert outcome.query_info["clean_query"] == ""


@pytest.mark.asyncio
async def test_relative_date_query(make_manager):
    """'articles from yesterday' keeps yesterday's article and drops today's."""
    store = InMemoryItemStore([
        Item(
            id="yesterday",
            owner_id="u1",
            title="Saved yesterday",
            content_type=ContentType.ARTICLE,
            created_at=datetime(2024, 5, 9, 15, 0, tzinfo=timezone.utc),
        ),
        Item(
            id="today",
            owner_id="u1",
            title="Saved today",
            content_type=ContentType.ARTICLE,
            created_at=datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc),
        ),
        Item(
            id="note",
            owner_id="u1",
            title="Yesterday's note",
            content_type=ContentType.NOTE,
            created_at=datetime(2024, 5, 9, 16, 0, tzinfo=timezone.utc),
        ),
    ])
    manager = make_manager(store, normalizer=QueryNormalizer(clock=lambda: FIXED_NOW))

    outcome = await manager.search("u1", "articles from yesterday")

    assert [r.item.id for r in outcome.results] == ["yesterday"]
    assert outcome.query_info["date_from"] == "2024-05-09T00:00:00+00:00"


@pytest.mark.asyncio
async def test_explicit_filters_override_parsed_ones(make_manager, item_store):
    """An explicit type replaces the one parsed from the text."""
    manager = make_manager(item_store)

    parsed = await manager.search("u1", "rust notes", mode="lexical")
    explicit = await manager.search("u1", "rust notes", mode="lexical", content_type=ContentType.ARTICLE)

    assert parsed.results == []
    assert [r.item.id for r in explicit.results] == ["A"]
    assert explicit.query_info["filters"]["content_type"] == "article"


@pytest.mark.asyncio
async def test_explicit_date_range(make_manager, item_store):
    """A request date range filters by creation time."""
    manager = make_manager(item_store)
    window = DateRange(start=datetime(2024, 5, 2, tzinfo=timezone.utc))

    outcome = await manager.search("u1", "", mode="lexical", date_range=window)

    assert [r.item.id for r in outcome.results] == ["B"]


@pytest.mark.asyncio
async def test_cross_owner_hits_are_dropped(make_manager, item_store):
    """A vector hit for another owner's item never reaches the results."""
    await item_store.add(Item(id="X", owner_id="u2", title="Rust secrets", content_type=ContentType.NOTE))
    index = ScriptedVectorIndex({"u1": [VectorHit("X", 0.99), VectorHit("A", 0.5)]})
    manager = make_manager(item_store, vector_index=index)

    semantic = await manager.search("u1", "rust", mode="semantic")
    other = await manager.search("u2", "rust", mode="lexical")

    assert [r.item.id for r in semantic.results] == ["A"]
    assert [r.item.id for r in other.results] == ["X"]


# ----------------------------------------------------------------------
# Item lifecycle
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_index_item_dispatches_embedding_job(make_manager, item_store):
    """New items are lexically searchable at once and queued for embedding."""
    dispatcher = RecordingDispatcher()
    manager = make_manager(item_store, job_dispatcher=dispatcher)

    item = await manager.index_item(
        Item(id="C", owner_id="u1", title="Camera review", content_type=ContentType.PRODUCT)
    )

    assert item.id == "C"
    assert [(job.item_id, job.owner_id) for job in dispatcher.jobs] == [("C", "u1")]
    outcome = await manager.search("u1", "camera", mode="lexical")
    assert [r.item.id for r in outcome.results] == ["C"]


@pytest.mark.asyncio
async def test_index_item_survives_dispatch_failure(make_manager, item_store):
    """A broken queue never fails the write."""
    manager = make_manager(item_store, job_dispatcher=RecordingDispatcher(fail=True))

    await manager.index_item(
        Item(id="C", owner_id="u1", title="Camera review", content_type=ContentType.PRODUCT)
    )

    assert await item_store.count("u1") == 3


@pytest.mark.asyncio
async def test_inline_embedding_makes_item_semantically_searchable(make_manager, item_store):
    """Item write, background embedding and semantic search end to end."""
    index = InMemoryVectorIndex(DIMENSION)
    provider = FakeEmbeddingProvider()
    worker = EmbeddingWorker(item_store, index, provider, base_delay=0)
    dispatcher = InlineJobDispatcher()
    manager = make_manager(
        item_store,
        vector_index=index,
        provider=provider,
        job_dispatcher=dispatcher,
        job_handler=worker.embed_items,
    )
    await manager.initialize()

    try:
        await manager.index_item(
            Item(id="C", owner_id="u1", title="Camera review", content_type=ContentType.PRODUCT)
        )
        await dispatcher.join()

        outcome = await manager.search("u1", "camera", mode="semantic")
        assert outcome.results[0].item.id == "C"
        assert await index.count("u1") == 1
    finally:
        await manager.cleanup()


@pytest.mark.asyncio
async def test_remove_item_deletes_vector(make_manager, item_store, item_a, item_b):
    """Deleting an item also removes its embedding."""
    index = InMemoryVectorIndex(DIMENSION)
    await embed_titles(index, item_a, item_b)
    manager = make_manager(item_store, vector_index=index)

    assert await manager.remove_item("u1", "A") is True
    assert await index.get("u1", "A") is None
    assert await manager.remove_item("u1", "A") is False

    outcome = await manager.search("u1", "rust", mode="semantic")
    assert "A" not in [r.item.id for r in outcome.results]


@pytest.mark.asyncio
async def test_remove_item_is_owner_scoped(make_manager, item_store, item_a):
    """Another owner cannot delete an item or its vector."""
    index = InMemoryVectorIndex(DIMENSION)
    await embed_titles(index, item_a)
    manager = make_manager(item_store, vector_index=index)

    assert await manager.remove_item("u2", "A") is False
    assert await index.get("u1", "A") is not None
    assert await item_store.count("u1") == 2


@pytest.mark.asyncio
async def test_remove_item_tolerates_vector_failure(make_manager, item_store):
    """The item is gone even if its vector could not be removed."""
    manager = make_manager(item_store, vector_index=UnreachableVectorIndex(DIMENSION))

    assert await manager.remove_item("u1", "A") is True
    assert await item_store.count("u1") == 1


@pytest.mark.asyncio
async def test_index_stats_and_reindex(make_manager, item_store, item_a):
    """Stats count pending items; reindex queues only those unless forced."""
    index = InMemoryVectorIndex(DIMENSION)
    await embed_titles(index, item_a)
    dispatcher = RecordingDispatcher()
    manager = make_manager(item_store, vector_index=index, job_dispatcher=dispatcher)

    stats = await manager.get_index_stats("u1")
    assert stats["items"] == 2
    assert stats["embeddings"] == 1
    assert stats["pending"] == 1

    result = await manager.reindex("u1")
    assert result["queued"] == 1
    assert result["skipped"] == 1
    assert [job.item_id for job in dispatcher.jobs] == ["B"]

    forced = await manager.reindex("u1", force=True)
    assert forced["queued"] == 2


@pytest.mark.asyncio
async def test_index_stats_with_unreachable_index(make_manager, item_store):
    """Stats still report item counts when the index is down."""
    manager = make_manager(item_store, vector_index=UnreachableVectorIndex(DIMENSION))

    stats = await manager.get_index_stats("u1")

    assert stats["items"] == 2
    assert stats["embeddings"] is None
    assert "vector_index_error" in stats


# ----------------------------------------------------------------------
# Health and lifecycle
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_check(make_manager, item_store):
    """Health reflects the required and optional components."""
    healthy = await make_manager(item_store).health_check()
    degraded = await make_manager(item_store, vector_index=UnreachableVectorIndex(DIMENSION)).health_check()

    assert healthy["status"] == "healthy"
    assert healthy["embedding_provider"]["state"] == "closed"
    assert degraded["status"] == "degraded"
    assert degraded["vector_index"] is False


@pytest.mark.asyncio
async def test_cleanup_closes_collaborators(make_manager, item_store):
    """Cleanup releases the provider and dispatcher."""
    provider = FakeEmbeddingProvider()
    dispatcher = RecordingDispatcher()
    manager = make_manager(item_store, provider=provider, job_dispatcher=dispatcher)

    await manager.cleanup()

    assert provider.closed
    assert dispatcher.closed


# ----------------------------------------------------------------------
# Ranking and concurrency
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lexical_ranking_scores_beyond_newest_candidates(make_manager):
    """An older title match beats a crowd of newer body matches."""
    items = [Item(
        id="TITLE",
        owner_id="u1",
        title="Rust ownership guide",
        content_type=ContentType.ARTICLE,
        created_at=datetime(2024, 4, 1, tzinfo=timezone.utc),
    )]
    items += [
        Item(
            id=f"B{day:02d}",
            owner_id="u1",
            title="Daily note",
            body="mentions rust",
            content_type=ContentType.NOTE,
            created_at=datetime(2024, 5, day, tzinfo=timezone.utc),
        )
        for day in range(1, 11)
    ]
    manager = make_manager(InMemoryItemStore(items))

    lexical = await manager.search("u1", "rust", mode=SearchMode.LEXICAL, limit=3)
    hybrid = await manager.search("u1", "rust", mode=SearchMode.HYBRID, limit=3)

    assert [r.item.id for r in lexical.results] == ["TITLE", "B10", "B09"]
    assert lexical.results[0].score == pytest.approx(0.4)
    assert "TITLE" in [r.item.id for r in hybrid.results]


@pytest.mark.asyncio
async def test_hybrid_legs_run_concurrently(make_manager, item_a, item_b):
    """Each leg waits for the other to start; sequential legs would time out."""
    listed = asyncio.Event()
    queried = asyncio.Event()
    store = RendezvousItemStore([item_a, item_b], listed, queried)
    index = RendezvousVectorIndex(listed, queried)
    await embed_titles(index, item_a, item_b)
    manager = make_manager(store, vector_index=index)

    outcome = await manager.search("u1", "rust", mode=SearchMode.HYBRID)

    assert not outcome.degraded
    assert outcome.results[0].item.id == "A"
    assert outcome.results[0].lexical_score == pytest.approx(0.4)
    assert outcome.results[0].vector_score == pytest.approx(1.0)

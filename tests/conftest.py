"""Shared fixtures and fakes for the Memoria test-suite."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from memoria.common.config import SearchConfig
from memoria.common.metrics import MetricsCollector
from memoria.embeddings.base import EmbeddingProvider, EmbeddingProviderError
from memoria.items.base import ItemStoreError
from memoria.items.memory import InMemoryItemStore
from memoria.items.models import ContentType, Item
from memoria.vector_store.base import VectorHit, VectorIndex, VectorStoreConnectionError
from memoria.vector_store.memory import InMemoryVectorIndex
from service_search.app.hybrid.search_manager import SearchManager

DIMENSION = 4

# Keyword -> direction in embedding space. Texts without a keyword map to
# the last axis.
KEYWORD_VECTORS: Dict[str, List[float]] = {
    "rust": [1.0, 0.0, 0.0, 0.0],
    "async": [0.9, 0.1, 0.0, 0.0],
    "bread": [0.0, 1.0, 0.0, 0.0],
    "sourdough": [0.0, 0.95, 0.05, 0.0],
    "camera": [0.0, 0.0, 1.0, 0.0],
}
DEFAULT_VECTOR = [0.0, 0.0, 0.0, 1.0]


def keyword_vector(text: str) -> List[float]:
    lowered = text.lower()
    for keyword, vector in KEYWORD_VECTORS.items():
        if keyword in lowered:
            return vector
    return DEFAULT_VECTOR


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic provider mapping keywords to fixed directions.

    ``fail_times`` makes the next N transport calls fail; ``always_fail``
    makes every call fail; ``delay`` sleeps before answering.
    """

    def __init__(self, fail_times: int = 0, always_fail: bool = False, delay: float = 0.0):
        super().__init__(dimension=DIMENSION, max_input_chars=200)
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.delay = delay
        self.calls: List[List[str]] = []
        self.closed = False

    async def _request(self, texts: List[str], query: bool) -> List[Sequence[float]]:
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail or self.fail_times > 0:
            self.fail_times = max(self.fail_times - 1, 0)
            raise EmbeddingProviderError("embedding backend unavailable")
        return [keyword_vector(text) for text in texts]

    async def close(self) -> None:
        self.closed = True


class ScriptedVectorIndex(VectorIndex):
    """Returns a fixed hit list per owner, regardless of the query vector."""

    def __init__(self, hits: Optional[Dict[str, List[VectorHit]]] = None):
        self.hits = hits or {}
        self.removed: List[str] = []

    async def upsert(self, owner_id, item_id, vector):
        self.hits.setdefault(owner_id, []).append(VectorHit(item_id=item_id, score=1.0))

    async def remove(self, item_id):
        self.removed.append(item_id)
        return True

    async def query(self, owner_id, query_vector, k):
        return list(self.hits.get(owner_id, []))[:k]

    async def get(self, owner_id, item_id):
        for hit in self.hits.get(owner_id, []):
            if hit.item_id == item_id:
                return np.ones(DIMENSION, dtype=np.float32)
        return None

    async def count(self, owner_id):
        return len(self.hits.get(owner_id, []))

    async def health_check(self):
        return True


class UnreachableVectorIndex(InMemoryVectorIndex):
    """Vector index whose reads and removals fail like a dead backend."""

    async def query(self, owner_id, query_vector, k):
        raise VectorStoreConnectionError("connection refused")

    async def remove(self, item_id):
        raise VectorStoreConnectionError("connection refused")

    async def count(self, owner_id):
        raise VectorStoreConnectionError("connection refused")

    async def health_check(self):
        return False


class BrokenItemStore(InMemoryItemStore):
    """Item store whose listing fails."""

    async def list_by_owner(self, owner_id, filters=None, limit=None):
        raise ItemStoreError("database is down")

    async def get_many(self, owner_id, item_ids):
        raise ItemStoreError("database is down")


class RecordingDispatcher:
    """Job dispatcher that records jobs, optionally failing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.jobs = []
        self.closed = False

    async def dispatch(self, job):
        if self.fail:
            raise RuntimeError("broker down")
        self.jobs.append(job)

    async def start(self, handler=None):
        pass

    async def close(self):
        self.closed = True


FIXED_NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def item_a() -> Item:
    return Item(
        id="A",
        owner_id="u1",
        title="Rust async runtimes",
        content_type=ContentType.ARTICLE,
        created_at=datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def item_b() -> Item:
    return Item(
        id="B",
        owner_id="u1",
        title="Baking sourdough bread",
        content_type=ContentType.NOTE,
        created_at=datetime(2024, 5, 2, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def item_store(item_a, item_b) -> InMemoryItemStore:
    return InMemoryItemStore([item_a, item_b])


@pytest.fixture
def search_config() -> SearchConfig:
    return SearchConfig(
        memoria_search_vector_timeout_seconds=0.5,
        memoria_search_max_limit=20,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector("test-service")


@pytest.fixture
def make_manager(search_config, metrics):
    """Factory building a ``SearchManager`` around the given collaborators."""

    def _make(item_store, vector_index=None, provider=None, **kwargs) -> SearchManager:
        return SearchManager(
            config=kwargs.pop("config", search_config),
            item_store=item_store,
            vector_index=vector_index if vector_index is not None else InMemoryVectorIndex(DIMENSION),
            embedding_provider=provider or FakeEmbeddingProvider(),
            metrics=metrics,
            **kwargs,
        )

    return _make

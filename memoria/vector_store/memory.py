"""In-process vector index backed by numpy.

Exact cosine search over all of an owner's vectors. Suitable for tests and
single-user local runs; the working set of a personal knowledge base is
small enough for a brute-force scan.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog

from .base import VectorHit, VectorIndex, VectorOwnershipError, as_vector, require_owner

logger = structlog.get_logger("vector_store.memory")


class InMemoryVectorIndex(VectorIndex):
    """Dictionary-backed vector index keyed by item id."""

    def __init__(self, vector_dimension: Optional[int] = None):
        self.vector_dimension = vector_dimension
        # item_id -> (owner_id, unit vector)
        self._records: Dict[str, Tuple[str, np.ndarray]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, owner_id: str, item_id: str, vector: np.ndarray) -> None:
        require_owner(owner_id)
        array = as_vector(vector, self.vector_dimension)
        if self.vector_dimension is None:
            self.vector_dimension = array.shape[0]
        norm = float(np.linalg.norm(array))
        if norm == 0.0:
            raise ValueError("Cannot index a zero vector")
        async with self._lock:
            existing = self._records.get(item_id)
            if existing is not None and existing[0] != owner_id:
                raise VectorOwnershipError(f"Item {item_id} is indexed under another owner")
            self._records[item_id] = (owner_id, array / norm)
        logger.debug("Upserted vector", owner_id=owner_id, item_id=item_id)

    async def remove(self, item_id: str) -> bool:
        async with self._lock:
            removed = self._records.pop(item_id, None) is not None
        if removed:
            logger.debug("Removed vector", item_id=item_id)
        return removed

    async def query(
        self,
        owner_id: str,
        query_vector: np.ndarray,
        k: int,
    ) -> List[VectorHit]:
        require_owner(owner_id)
        if k <= 0:
            return []
        query = as_vector(query_vector, self.vector_dimension)
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            raise ValueError("Cannot query with a zero vector")
        query = query / norm

        owned = [
            (item_id, vector)
            for item_id, (owner, vector) in self._records.items()
            if owner == owner_id
        ]
        if not owned:
            return []

        matrix = np.stack([vector for _, vector in owned])
        scores = matrix @ query
        hits = [
            VectorHit(item_id=item_id, score=float(score))
            for (item_id, _), score in zip(owned, scores)
        ]
        hits.sort(key=lambda hit: (-hit.score, hit.item_id))
        return hits[:k]

    async def get(self, owner_id: str, item_id: str) -> Optional[np.ndarray]:
        require_owner(owner_id)
        record = self._records.get(item_id)
        if record is None or record[0] != owner_id:
            return None
        return record[1].copy()

    async def count(self, owner_id: str) -> int:
        require_owner(owner_id)
        return sum(1 for owner, _ in self._records.values() if owner == owner_id)

    async def health_check(self) -> bool:
        return True

"""Base vector index interface.

Defines the owner-scoped contract the search service and the indexer worker
depend on, independent of the backing implementation (in-memory, PgVector).

Every read takes an ``owner_id``; there is no way to query across owners.
Failures are raised as ``VectorStoreError`` subclasses so callers can tell a
broken index apart from an empty result.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional

import numpy as np


@dataclass(frozen=True)
class VectorHit:
    """One nearest-neighbour result: item id and cosine similarity."""
    item_id: str
    score: float


class VectorIndex(ABC):
    """Abstract base class for vector indexes.

    Implementations must keep one vector per item (upserts replace), keep a
    fixed dimensionality, and return hits sorted by descending score with
    ties broken by item id.
    """

    @abstractmethod
    async def upsert(self, owner_id: str, item_id: str, vector: np.ndarray) -> None:
        """Store or replace the vector for an item."""
        pass

    @abstractmethod
    async def remove(self, item_id: str) -> bool:
        """Delete an item's vector.

        Returns ``True`` if a record was deleted. Removing an unknown id is
        not an error.
        """
        pass

    @abstractmethod
    async def query(
        self,
        owner_id: str,
        query_vector: np.ndarray,
        k: int,
    ) -> List[VectorHit]:
        """Return up to ``k`` of the owner's closest vectors.

        Returns
        - A list of ``VectorHit`` sorted by descending cosine similarity,
          then ascending item id

        Raises
        - ``VectorStoreError`` when the backend is unreachable or not
          provisioned; never an empty list in that case
        """
        pass

    @abstractmethod
    async def get(self, owner_id: str, item_id: str) -> Optional[np.ndarray]:
        """Get the stored vector for one of the owner's items."""
        pass

    @abstractmethod
    async def count(self, owner_id: str) -> int:
        """Number of vectors stored for the owner."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the index is healthy."""
        pass

    async def close(self) -> None:
        """Release backend resources; no-op by default."""
        pass


def require_owner(owner_id: str) -> str:
    if not owner_id:
        raise ValueError("owner_id is required for vector index operations")
    return owner_id


def as_vector(vector: Iterable[float], dimension: Optional[int]) -> np.ndarray:
    """Coerce to a 1-D float32 array of the expected dimensionality."""
    array = np.asarray(vector, dtype=np.float32)
    if array.ndim != 1:
        raise ValueError("Vector must be one-dimensional")
    if dimension is not None and array.shape[0] != dimension:
        raise ValueError(
            f"Expected vector dimension {dimension}, got {array.shape[0]}"
        )
    return array


class VectorStoreError(Exception):
    """Base exception for vector index operations."""
    pass


class VectorStoreConnectionError(VectorStoreError):
    """Connection error to the vector backend."""
    pass


class VectorStoreQueryError(VectorStoreError):
    """Query error in the vector backend."""
    pass


class VectorStoreNotProvisionedError(VectorStoreError):
    """The backing table or extension does not exist yet."""
    pass


class VectorOwnershipError(ValueError):
    """An item's vector is already stored under a different owner."""
    pass

"""Owner-scoped vector index package."""

from .base import (
    VectorHit,
    VectorIndex,
    VectorOwnershipError,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreNotProvisionedError,
    VectorStoreQueryError,
)
from .factory import create_vector_index

__all__ = [
    "VectorHit",
    "VectorIndex",
    "VectorOwnershipError",
    "VectorStoreError",
    "VectorStoreConnectionError",
    "VectorStoreQueryError",
    "VectorStoreNotProvisionedError",
    "create_vector_index",
]

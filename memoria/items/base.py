"""Item store interface.

The lexical matcher and the retrieval orchestrator depend on this contract,
never on a concrete backend. Every read is scoped to an owner.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from .models import Item, ItemFilters


class ItemStore(ABC):
    """Abstract base class for item stores."""

    @abstractmethod
    async def add(self, item: Item) -> Item:
        """Persist a new item.

        Raises ``ItemAlreadyExistsError`` when the id is taken.
        """

    @abstractmethod
    async def get_many(self, owner_id: str, item_ids: Sequence[str]) -> List[Item]:
        """Fetch the owner's items among ``item_ids``; unknown ids are omitted."""

    @abstractmethod
    async def list_by_owner(
        self,
        owner_id: str,
        filters: Optional[ItemFilters] = None,
        limit: Optional[int] = None,
    ) -> List[Item]:
        """List the owner's items matching ``filters``, newest first."""

    @abstractmethod
    async def delete(self, owner_id: str, item_id: str) -> bool:
        """Delete an item. Returns ``True`` if something was deleted."""

    @abstractmethod
    async def count(self, owner_id: str) -> int:
        """Number of items the owner has."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the store is reachable."""

    async def close(self) -> None:
        """Release connections; no-op by default."""


class ItemStoreError(Exception):
    """Base exception for item store operations."""
    pass


class ItemAlreadyExistsError(ItemStoreError):
    """An item with the same id already exists."""
    pass

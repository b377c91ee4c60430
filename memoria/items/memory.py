"""In-process item store used for local runs and tests."""

import asyncio
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from .base import ItemAlreadyExistsError, ItemStore
from .models import Item, ItemFilters

logger = structlog.get_logger("items.memory")


class InMemoryItemStore(ItemStore):
    """Dictionary-backed store keyed by item id."""

    def __init__(self, items: Optional[Iterable[Item]] = None):
        self._items: Dict[str, Item] = {}
        self._lock = asyncio.Lock()
        for item in items or ():
            if item.id in self._items:
                raise ItemAlreadyExistsError(f"Item {item.id} already exists")
            self._items[item.id] = item

    async def add(self, item: Item) -> Item:
        async with self._lock:
            if item.id in self._items:
                raise ItemAlreadyExistsError(f"Item {item.id} already exists")
            self._items[item.id] = item
        logger.debug("Stored item", item_id=item.id, owner_id=item.owner_id)
        return item

    async def get_many(self, owner_id: str, item_ids: Sequence[str]) -> List[Item]:
        found = []
        for item_id in item_ids:
            item = self._items.get(item_id)
            if item is not None and item.owner_id == owner_id:
                found.append(item)
        return found

    async def list_by_owner(
        self,
        owner_id: str,
        filters: Optional[ItemFilters] = None,
        limit: Optional[int] = None,
    ) -> List[Item]:
        filters = filters or ItemFilters()
        matched = [
            item for item in self._items.values()
            if item.owner_id == owner_id and filters.matches(item)
        ]
        # Newest first; id keeps equal timestamps in a stable order.
        matched.sort(key=lambda item: item.id)
        matched.sort(key=lambda item: item.created_at, reverse=True)
        if limit is not None:
            matched = matched[:limit]
        return matched

    async def delete(self, owner_id: str, item_id: str) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.owner_id != owner_id:
                return False
            del self._items[item_id]
        logger.debug("Deleted item", item_id=item_id, owner_id=owner_id)
        return True

    async def count(self, owner_id: str) -> int:
        return sum(1 for item in self._items.values() if item.owner_id == owner_id)

    async def health_check(self) -> bool:
        return True

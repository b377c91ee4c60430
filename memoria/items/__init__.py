"""Captured items and the stores that hold them.

Primary components:
- ``models``: ``Item``, ``ContentType``, ``DateRange``, ``ItemFilters``.
- ``base``: abstract ``ItemStore`` interface and exceptions.
- ``memory``: in-process store for tests and local runs.
- ``postgres``: asyncpg implementation.
"""

from .base import ItemAlreadyExistsError, ItemStore, ItemStoreError
from .models import ContentType, DateRange, Item, ItemFilters

__all__ = [
    "ContentType",
    "DateRange",
    "Item",
    "ItemFilters",
    "ItemStore",
    "ItemStoreError",
    "ItemAlreadyExistsError",
]

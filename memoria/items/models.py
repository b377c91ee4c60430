"""Captured item model and the filters used to select items.

Items are owned, immutable records. The only lifecycle transition after
creation is deletion, which also removes the item's embedding.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
import uuid


class ContentType(str, Enum):
    """Closed set of captured content kinds."""
    ARTICLE = "article"
    VIDEO = "video"
    PRODUCT = "product"
    NOTE = "note"
    TODO = "todo"


@dataclass(frozen=True)
class DateRange:
    """Inclusive creation-time window; a missing bound is unbounded."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        for bound in (self.start, self.end):
            if bound is not None and bound.tzinfo is None:
                raise ValueError("DateRange bounds must be timezone-aware")
        if self.start and self.end and self.start > self.end:
            raise ValueError("DateRange start must not be after end")

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True


@dataclass(frozen=True)
class Item:
    """One captured piece of content belonging to exactly one owner."""
    owner_id: str
    title: str
    content_type: ContentType
    body: Optional[str] = None
    source_url: Optional[str] = None
    tags: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.id:
            raise ValueError("Item id must be non-empty")
        if not self.owner_id:
            raise ValueError("Item owner_id must be non-empty")
        if not self.title or not self.title.strip():
            raise ValueError("Item title must be non-empty")
        if self.created_at.tzinfo is None:
            raise ValueError("Item created_at must be timezone-aware")
        # Accept plain strings / lists from callers; store canonical types.
        object.__setattr__(self, "content_type", ContentType(self.content_type))
        object.__setattr__(self, "tags", tuple(self.tags))

    def has_tag(self, tag: str) -> bool:
        wanted = tag.lower()
        return any(t.lower() == wanted for t in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "body": self.body,
            "source_url": self.source_url,
            "content_type": self.content_type.value,
            "tags": list(self.tags),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ItemFilters:
    """Predicates applied when listing an owner's items (AND semantics).

    - ``text``: case-insensitive substring over title, body and tags
    - ``content_type``: equality
    - ``date_range``: inclusive bounds on ``created_at``
    - ``tags``: the item must carry every listed tag (case-insensitive)
    """
    text: Optional[str] = None
    content_type: Optional[ContentType] = None
    date_range: Optional[DateRange] = None
    tags: Tuple[str, ...] = ()

    def has_structured_filters(self) -> bool:
        return bool(self.content_type or self.date_range or self.tags)

    def matches_structured(self, item: Item) -> bool:
        """Check every filter except the text predicate."""
        if self.content_type is not None and item.content_type != self.content_type:
            return False
        if self.date_range is not None and not self.date_range.contains(item.created_at):
            return False
        return all(item.has_tag(tag) for tag in self.tags)

    def matches(self, item: Item) -> bool:
        if not self.matches_structured(item):
            return False
        if not self.text:
            return True
        needle = self.text.lower()
        if needle in item.title.lower():
            return True
        if item.body and needle in item.body.lower():
            return True
        return any(needle in tag.lower() for tag in item.tags)

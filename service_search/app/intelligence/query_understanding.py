"""Query understanding for personal knowledge search.

Pulls lightweight structured filters out of free text before the matchers
see it:

- content type from a small synonym vocabulary ("posts" -> article)
- a creation-date window from relative phrases ("yesterday", "this week")
- hashtags (``#rust``) as required tags

At most one type phrase and one date phrase are applied; the first pattern
in priority order wins. Hashtags are extracted independently. Everything
else is left as the clean query text in its original case.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import re
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple

import structlog

from memoria.items.models import ContentType, DateRange, ItemFilters

logger = structlog.get_logger("query_understanding")

DateWindow = Callable[[datetime], DateRange]


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _today(now: datetime) -> DateRange:
    start = _start_of_day(now)
    return DateRange(start=start, end=start + timedelta(days=1))


def _yesterday(now: datetime) -> DateRange:
    today = _start_of_day(now)
    return DateRange(start=today - timedelta(days=1), end=today)


def _trailing(days: int) -> DateWindow:
    def window(now: datetime) -> DateRange:
        return DateRange(start=now - timedelta(days=days), end=now)
    return window


CONTENT_TYPE_PATTERNS: List[Tuple[Pattern, ContentType]] = [
    (re.compile(r"\b(articles?|posts?|blogs?)\b", re.IGNORECASE), ContentType.ARTICLE),
    (re.compile(r"\b(videos?|clips?|recordings?)\b", re.IGNORECASE), ContentType.VIDEO),
    (re.compile(r"\b(products?|items?|purchases?)\b", re.IGNORECASE), ContentType.PRODUCT),
    (re.compile(r"\b(notes?|memos?)\b", re.IGNORECASE), ContentType.NOTE),
    (re.compile(r"\b(todos?|tasks?)\b", re.IGNORECASE), ContentType.TODO),
]

DATE_PATTERNS: List[Tuple[Pattern, DateWindow]] = [
    (re.compile(r"\b(today|this day)\b", re.IGNORECASE), _today),
    (re.compile(r"\byesterday\b", re.IGNORECASE), _yesterday),
    (re.compile(r"\b(this week|last 7 days?)\b", re.IGNORECASE), _trailing(7)),
    (re.compile(r"\b(this month|last month|last 30 days?)\b", re.IGNORECASE), _trailing(30)),
    (re.compile(r"\b(this year|last year)\b", re.IGNORECASE), _trailing(365)),
]

HASHTAG_PATTERN = re.compile(r"#(\w+)")
WHITESPACE_PATTERN = re.compile(r"\s+")

# Words left dangling once a type or date phrase is removed
# ("articles from yesterday" -> "from").
CONNECTOR_WORDS = frozenset({
    "a", "about", "all", "an", "any", "during", "find", "for", "from", "in",
    "me", "my", "of", "on", "saved", "show", "since", "some", "the", "with",
})


@dataclass(frozen=True)
class NormalizedQuery:
    """Clean query text plus the filters extracted from it."""
    original_query: str
    clean_query: str
    content_type: Optional[ContentType] = None
    date_range: Optional[DateRange] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)

    def to_filters(self) -> ItemFilters:
        return ItemFilters(
            text=self.clean_query or None,
            content_type=self.content_type,
            date_range=self.date_range,
            tags=self.tags,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "clean_query": self.clean_query,
            "content_type": self.content_type.value if self.content_type else None,
            "date_from": self.date_range.start.isoformat() if self.date_range and self.date_range.start else None,
            "date_to": self.date_range.end.isoformat() if self.date_range and self.date_range.end else None,
            "tags": list(self.tags),
        }


class QueryNormalizer:
    """Extracts content-type, date and hashtag filters from query text."""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        strip_connectors: bool = True,
    ):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.strip_connectors = strip_connectors

    def normalize(self, raw_query: Optional[str], now: Optional[datetime] = None) -> NormalizedQuery:
        """Normalize ``raw_query``.

        Parameters
        - raw_query: User text; ``None`` is treated as empty
        - now: Reference time for relative dates; day boundaries use its
          timezone (a naive value is taken as UTC)

        Returns
        - ``NormalizedQuery``; absent patterns leave their filter unset
        """
        original = raw_query or ""
        now = now or self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        text = original

        # Hashtags first so "#notes" stays a tag instead of a type phrase.
        tags: List[str] = []
        seen = set()
        for match in HASHTAG_PATTERN.finditer(text):
            tag = match.group(1)
            if tag.lower() not in seen:
                seen.add(tag.lower())
                tags.append(tag)
        text = HASHTAG_PATTERN.sub(" ", text)

        stripped_phrase = False

        content_type: Optional[ContentType] = None
        for pattern, candidate in CONTENT_TYPE_PATTERNS:
            if pattern.search(text):
                content_type = candidate
                text = pattern.sub(" ", text)
                stripped_phrase = True
                break

        date_range: Optional[DateRange] = None
        for pattern, window in DATE_PATTERNS:
            if pattern.search(text):
                date_range = window(now)
                text = pattern.sub(" ", text)
                stripped_phrase = True
                break

        clean = WHITESPACE_PATTERN.sub(" ", text).strip()
        if stripped_phrase and self.strip_connectors:
            clean = self._strip_connectors(clean)

        normalized = NormalizedQuery(
            original_query=original,
            clean_query=clean,
            content_type=content_type,
            date_range=date_range,
            tags=tuple(tags),
        )
        logger.debug(
            "Normalized query",
            clean_query=clean,
            content_type=content_type.value if content_type else None,
            has_date_range=date_range is not None,
            tag_count=len(tags),
        )
        return normalized

    @staticmethod
    def _strip_connectors(text: str) -> str:
        words = text.split(" ") if text else []
        while words and words[0].lower() in CONNECTOR_WORDS:
            words.pop(0)
        while words and words[-1].lower() in CONNECTOR_WORDS:
            words.pop()
        return " ".join(words)

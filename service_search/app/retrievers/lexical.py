"""Lexical (keyword) retrieval over the item store.

The store does the filtering (owner scope, type/date/tag predicates and the
case-insensitive substring test); this module scores what comes back by
which fields matched:

    score = min(1, title_weight*[title] + body_weight*[body] + tag_weight*[tags])

With query text every filtered candidate is scored before the limit is
applied, so an older title match is never cut in favour of newer body
matches. Results come back in score order, ties in the store's retrieval
order (newest first). In filter-only mode all scores are equal and the
store applies the limit itself.
"""

from dataclasses import replace
from typing import List, Optional, Tuple

import structlog

from memoria.items.base import ItemStore
from memoria.items.models import Item, ItemFilters

from ..models import ScoredResult

logger = structlog.get_logger("lexical_matcher")

FIELD_LABELS = ("title", "content", "tags")
FILTER_ONLY_REASON = "Matched filters"


class LexicalMatcher:
    """Substring matcher with weighted field scoring."""

    def __init__(
        self,
        item_store: ItemStore,
        title_weight: float = 0.4,
        body_weight: float = 0.3,
        tag_weight: float = 0.2,
        filter_match_score: float = 1.0,
    ):
        for name, value in (
            ("title_weight", title_weight),
            ("body_weight", body_weight),
            ("tag_weight", tag_weight),
        ):
            if value < 0:
                raise ValueError(f"{name} must be non-negative")
        if not 0.0 <= filter_match_score <= 1.0:
            raise ValueError("filter_match_score must be within [0, 1]")

        self.item_store = item_store
        self.title_weight = title_weight
        self.body_weight = body_weight
        self.tag_weight = tag_weight
        self.filter_match_score = filter_match_score

    def score_item(self, item: Item, query: str) -> Tuple[float, str]:
        """Score one item against ``query``.

        Returns ``(score, reason)``; reason lists matched fields in
        title/content/tags order, or is empty when nothing matched.
        """
        needle = query.lower()
        matched = (
            needle in item.title.lower(),
            bool(item.body) and needle in item.body.lower(),
            any(needle in tag.lower() for tag in item.tags),
        )
        weights = (self.title_weight, self.body_weight, self.tag_weight)

        score = min(1.0, sum(weight for weight, hit in zip(weights, matched) if hit))
        fields = [label for label, hit in zip(FIELD_LABELS, matched) if hit]
        reason = f"Matched in {', '.join(fields)}" if fields else ""
        return score, reason

    async def match(
        self,
        owner_id: str,
        query: str,
        filters: Optional[ItemFilters] = None,
        limit: Optional[int] = None,
    ) -> List[ScoredResult]:
        """Find the owner's items containing ``query``.

        Parameters
        - owner_id: Whose items to search
        - query: Clean query text; empty means filter-only mode
        - filters: Structured filters (type, date window, tags); their
          ``text`` is replaced by ``query``
        - limit: Maximum number of results

        Returns
        - ``ScoredResult`` list, best score first
        """
        query = (query or "").strip()
        store_filters = replace(filters or ItemFilters(), text=query or None)

        if not query and not store_filters.has_structured_filters():
            raise ValueError("lexical match needs query text or at least one filter")

        if not query:
            items = await self.item_store.list_by_owner(owner_id, store_filters, limit=limit)
            results = [
                ScoredResult(item=item, score=self.filter_match_score, reason=FILTER_ONLY_REASON)
                for item in items
            ]
        else:
            items = await self.item_store.list_by_owner(owner_id, store_filters)
            results = []
            for item in items:
                score, reason = self.score_item(item, query)
                if not reason:
                    # Store and scorer disagree (e.g. collation); never invent a match.
                    continue
                results.append(ScoredResult(item=item, score=score, reason=reason))
            # Stable sort: equal scores stay newest first.
            results.sort(key=lambda r: -r.score)
            if limit is not None:
                results = results[:limit]

        logger.debug(
            "Lexical match completed",
            owner_id=owner_id,
            filter_only=not query,
            candidates=len(items),
            results_count=len(results),
        )
        return results

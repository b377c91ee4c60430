"""Score fusion for hybrid search.

One canonical policy: a weighted sum of the per-leg scores over the union
of item ids.

    combined = vector_weight * vector_score + lexical_weight * lexical_score

A leg that did not return an item contributes 0 for it, so items found by
only one leg are penalized rather than inheriting the other leg's score.
Ties break by lexical rank, then vector rank, then item id, which makes the
ordering fully deterministic for a given input.
"""

import math
from typing import Dict, List, Optional, Sequence

import structlog

from ..models import ScoredResult

logger = structlog.get_logger("search_fusion")


def clamp_score(score: float) -> float:
    return max(0.0, min(1.0, score))


class WeightedScoreFusion:
    """Weighted-sum fusion of lexical and vector result lists."""

    def __init__(self, vector_weight: float = 0.7, lexical_weight: float = 0.3):
        if vector_weight < 0 or lexical_weight < 0:
            raise ValueError("fusion weights must be non-negative")
        if vector_weight + lexical_weight <= 0:
            raise ValueError("at least one fusion weight must be positive")
        self.vector_weight = vector_weight
        self.lexical_weight = lexical_weight

    @staticmethod
    def _index(results: Sequence[ScoredResult]) -> Dict[str, int]:
        ranks: Dict[str, int] = {}
        for rank, result in enumerate(results):
            # First occurrence wins if a leg repeats an id.
            ranks.setdefault(result.item.id, rank)
        return ranks

    def fuse(
        self,
        lexical_results: Sequence[ScoredResult],
        vector_results: Sequence[ScoredResult],
        limit: Optional[int] = None,
    ) -> List[ScoredResult]:
        """Merge both legs into one ranked list.

        Parameters
        - lexical_results: Lexical leg output, in its own rank order
        - vector_results: Vector leg output, best first
        - limit: Cap on the returned list; ``None`` keeps everything

        Returns
        - ``ScoredResult`` list with combined scores (clamped to [0, 1] for
          display; ordering uses the raw values) and merged reasons
        """
        lexical_ranks = self._index(lexical_results)
        vector_ranks = self._index(vector_results)

        fused = []
        for item_id in list(lexical_ranks) + [i for i in vector_ranks if i not in lexical_ranks]:
            lexical = lexical_results[lexical_ranks[item_id]] if item_id in lexical_ranks else None
            vector = vector_results[vector_ranks[item_id]] if item_id in vector_ranks else None

            lexical_score = lexical.score if lexical else 0.0
            vector_score = vector.score if vector else 0.0
            combined = self.vector_weight * vector_score + self.lexical_weight * lexical_score

            reasons = [r.reason for r in (vector, lexical) if r is not None and r.reason]
            item = (lexical or vector).item

            sort_key = (
                -combined,
                lexical_ranks.get(item_id, math.inf),
                vector_ranks.get(item_id, math.inf),
                item_id,
            )
            fused.append((sort_key, ScoredResult(
                item=item,
                score=combined,
                reason="; ".join(reasons),
                lexical_score=lexical.score if lexical else None,
                vector_score=vector.score if vector else None,
            )))

        fused.sort(key=lambda entry: entry[0])
        ranked = [result for _, result in fused]
        if limit is not None:
            ranked = ranked[:max(limit, 0)]

        logger.debug(
            "Weighted fusion completed",
            lexical_count=len(lexical_results),
            vector_count=len(vector_results),
            fused_count=len(ranked),
            vector_weight=self.vector_weight,
            lexical_weight=self.lexical_weight,
        )
        return [
            ScoredResult(
                item=r.item,
                score=clamp_score(r.score),
                reason=r.reason,
                lexical_score=r.lexical_score,
                vector_score=r.vector_score,
            )
            for r in ranked
        ]

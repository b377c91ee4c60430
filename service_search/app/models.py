"""Search-side result types shared by the matchers, fusion and orchestrator."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from memoria.items.models import Item


class SearchMode(str, Enum):
    """Which ranking signals a search uses."""
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class ScoredResult:
    """An item paired with a relevance score and a human-readable reason.

    ``lexical_score`` / ``vector_score`` keep the per-leg inputs when a
    result went through fusion.
    """
    item: Item
    score: float
    reason: str
    lexical_score: Optional[float] = None
    vector_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "item": self.item.to_dict(),
            "score": round(self.score, 6),
            "reason": self.reason,
        }
        if self.lexical_score is not None or self.vector_score is not None:
            data["components"] = {
                "lexical": self.lexical_score,
                "vector": self.vector_score,
            }
        return data


@dataclass
class SearchOutcome:
    """Everything one ``search`` call produced."""
    results: List[ScoredResult]
    mode: SearchMode
    degraded: bool = False
    degraded_reason: Optional[str] = None
    query_info: Dict[str, Any] = field(default_factory=dict)
    latency_ms: float = 0.0

    @property
    def count(self) -> int:
        return len(self.results)

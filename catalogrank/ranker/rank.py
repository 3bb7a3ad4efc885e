"""Dense ranking and rank variation markers."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

VARIATION_NEW = 'NEW'
VARIATION_UNCHANGED = '='


@dataclass
class ScoredEntity:
    """An entity with its score for this run."""
    entity_id: int
    score: float
    tie_break_count: int = 0


@dataclass
class RankedEntity:
    """An entity with its rank for this run and the rank it held before."""
    entity_id: int
    score: float
    rank: int
    previous_rank: int = 0
    variation: str = VARIATION_NEW

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.entity_id,
            'score': round(self.score, 2),
            'rank': self.rank,
            'change': self.variation,
        }


def assign_ranks(scored: List[ScoredEntity], count_tiebreak: bool = False) -> List[RankedEntity]:
    """
    Sort by score descending and assign ranks 1..N with no gaps.

    Ties are broken by higher tie_break_count when count_tiebreak is set,
    then by ascending id.
    """
    if not scored:
        return []

    ids = np.array([entity.entity_id for entity in scored], dtype=np.int64)
    scores = np.array([entity.score for entity in scored], dtype=np.float64)
    counts = np.array(
        [entity.tie_break_count if count_tiebreak else 0 for entity in scored],
        dtype=np.int64,
    )

    # lexsort uses the last key as primary
    order = np.lexsort((ids, -counts, -scores))

    return [
        RankedEntity(
            entity_id=scored[index].entity_id,
            score=scored[index].score,
            rank=position + 1,
        )
        for position, index in enumerate(order.tolist())
    ]


def compute_variation(new_rank: int, previous_rank: Optional[int]) -> str:
    """
    Rank change marker: NEW, +N (rose), -N (fell) or = (unchanged).
    """
    if not previous_rank or previous_rank <= 0:
        return VARIATION_NEW
    delta = previous_rank - new_rank
    if delta > 0:
        return f"+{delta}"
    if delta < 0:
        return str(delta)
    return VARIATION_UNCHANGED


def apply_variations(ranked: List[RankedEntity], previous_ranks: Dict[int, int]) -> List[RankedEntity]:
    """Fill previous_rank and variation from the ranks stored before this run."""
    for entity in ranked:
        entity.previous_rank = previous_ranks.get(entity.entity_id, 0) or 0
        entity.variation = compute_variation(entity.rank, entity.previous_rank)
    return ranked

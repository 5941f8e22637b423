"""Reciprocal Rank Fusion of structural and semantic hit lists.

``score(e) = sum(weight_s / (k + rank_s(e)))`` over every source ``s`` that
returned ``e``.  Ranks are 1-based.  Ordering is fully deterministic:
fused score descending, then higher semantic raw score (entities the
semantic side did not return count as lowest), then entity id.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Sequence, Tuple

from .models import FusedHit, RankedHit

DEFAULT_K = 60


def _ranks(hits: Sequence[RankedHit]) -> Dict[str, Tuple[int, RankedHit]]:
    ranked: Dict[str, Tuple[int, RankedHit]] = {}
    for position, hit in enumerate(hits, start=1):
        if hit.entity_id in ranked:
            continue
        ranked[hit.entity_id] = (hit.rank if hit.rank > 0 else position, hit)
    return ranked


def fusion_sort_key(hit: FusedHit) -> Tuple[float, float, str]:
    semantic = hit.semantic_score if hit.semantic_score is not None else float("-inf")
    return (-hit.fused_score, -semantic, hit.entity_id)


def fuse(
    structural: Sequence[RankedHit],
    semantic: Sequence[RankedHit],
    k: int = DEFAULT_K,
    structural_weight: float = 1.0,
    semantic_weight: float = 1.0,
) -> List[FusedHit]:
    if k < 0:
        raise ValueError("RRF constant k must be non-negative")

    fused: Dict[str, FusedHit] = {}

    for rank, hit in _ranks(structural).values():
        entry = fused.setdefault(hit.entity_id, FusedHit(entity_id=hit.entity_id, fused_score=0.0))
        entry.fused_score += structural_weight / (k + rank)
        entry.structural_score = hit.score
        entry.structural_rank = rank
        entry.entity = entry.entity or hit.entity

    for rank, hit in _ranks(semantic).values():
        entry = fused.setdefault(hit.entity_id, FusedHit(entity_id=hit.entity_id, fused_score=0.0))
        entry.fused_score += semantic_weight / (k + rank)
        entry.semantic_score = hit.score
        entry.semantic_rank = rank
        entry.entity = entry.entity or hit.entity

    return sorted(fused.values(), key=fusion_sort_key)


def apply_rerank(
    fused: Sequence[FusedHit],
    scores: Mapping[int, float],
    top_k: int,
) -> Tuple[List[FusedHit], bool]:
    """Reorder the first *top_k* hits by rerank score.

    *scores* maps a position in the prefix to its relevance score.  Prefix
    entries without a score keep their fused order after the scored ones;
    everything past *top_k* is appended unchanged.  Returns the new order
    and whether any prefix entry went unscored.
    """
    prefix = list(fused[:top_k])
    tail = list(fused[top_k:])

    scored: List[Tuple[float, int, FusedHit]] = []
    unscored: List[FusedHit] = []
    for position, hit in enumerate(prefix):
        if position in scores:
            hit.rerank_score = float(scores[position])
            scored.append((hit.rerank_score, position, hit))
        else:
            unscored.append(hit)

    scored.sort(key=lambda item: (-item[0], item[1]))
    return [hit for _, _, hit in scored] + unscored + tail, bool(unscored)

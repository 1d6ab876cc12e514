"""Reciprocal Rank Fusion."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from code_search.schemas.vectors import RetrievalPath

__all__ = [
    'FusedScore',
    'reciprocal_rank_fusion',
]

type FusedScore = tuple[str, float, Mapping[RetrievalPath, int]]  # (chunk id, score, 1-based ranks)


def reciprocal_rank_fusion(
    rankings: Mapping[RetrievalPath, Sequence[str]],
    *,
    k: int = 60,
    weights: Mapping[RetrievalPath, float] | None = None,
) -> Sequence[FusedScore]:
    """Fuse ranked chunk-id lists.

    Each appearance at 1-based rank r in a list with weight w contributes
    w / (k + r). Results are ordered by score descending, then by best
    individual rank, then by chunk id, so the output is deterministic.
    A chunk repeated within one list counts at its first rank only.
    """
    scores: dict[str, float] = {}
    ranks: dict[str, dict[RetrievalPath, int]] = {}
    for path, chunk_ids in rankings.items():
        weight = 1.0 if weights is None else weights.get(path, 1.0)
        for rank, chunk_id in enumerate(chunk_ids, start=1):
            chunk_ranks = ranks.setdefault(chunk_id, {})
            if path in chunk_ranks:
                continue
            chunk_ranks[path] = rank
            scores[chunk_id] = scores.get(chunk_id, 0.0) + weight / (k + rank)

    ordered = sorted(scores, key=lambda chunk_id: (-scores[chunk_id], min(ranks[chunk_id].values()), chunk_id))
    return [(chunk_id, scores[chunk_id], ranks[chunk_id]) for chunk_id in ordered]

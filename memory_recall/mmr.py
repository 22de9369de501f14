"""Maximal-marginal-relevance reranking with source diversity."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from memory_recall.config import MmrConfig
from memory_recall.hybrid import SearchResult
from memory_recall.query_expansion import tokenize


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 0.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def normalize_scores(results: Sequence[SearchResult]) -> list[float]:
    """Min-max scale scores to [0, 1]; an all-equal pool maps to 1."""
    if not results:
        return []
    scores = [item.score for item in results]
    low, high = min(scores), max(scores)
    span = high - low
    if span <= 1e-12:
        return [1.0 for _ in scores]
    return [(score - low) / span for score in scores]


class _SimilarityCache:
    def __init__(self, results: Sequence[SearchResult]):
        self._tokens = {item.chunk_id: set(tokenize(item.content)) for item in results}
        self._pairs: dict[tuple[str, str], float] = {}

    def similarity(self, a: str, b: str) -> float:
        key = (a, b) if a <= b else (b, a)
        cached = self._pairs.get(key)
        if cached is None:
            cached = jaccard_similarity(self._tokens.get(a, set()), self._tokens.get(b, set()))
            self._pairs[key] = cached
        return cached


def source_penalty(same_source_count: int, weight: float, max_per_source_soft: int) -> float:
    """Linear penalty per already-selected item from the same source, steeper past the soft max."""
    if same_source_count <= 0:
        return 0.0
    penalty = weight * same_source_count
    if same_source_count >= max_per_source_soft:
        penalty += weight * (same_source_count - max_per_source_soft + 1)
    return penalty


def apply_mmr_rerank(
    results: Sequence[SearchResult],
    config: MmrConfig,
    top_k: int | None = None,
) -> list[SearchResult]:
    """Greedy diverse selection over ``results``.

    Each step picks the candidate maximizing
    ``lambda * relevance - (1 - lambda) * max_jaccard - source_penalty``.
    Candidates whose overlap with the selection reaches
    ``config.duplicate_threshold`` are held back until nothing else is left.
    With ``lambda == 1`` this is plain relevance order.
    """
    pool = list(results)
    limit = len(pool) if top_k is None else max(0, min(int(top_k), len(pool)))
    if not config.enabled:
        ranked = sorted(pool, key=lambda item: -item.score)
        return ranked[:limit]

    lam = float(config.lambda_)
    diversify = lam < 1.0
    relevance = normalize_scores(pool)
    similarity = _SimilarityCache(pool)
    max_overlap = [0.0 for _ in pool]
    per_source: Counter[str] = Counter()
    remaining = list(range(len(pool)))
    selected: list[SearchResult] = []

    while remaining and len(selected) < limit:
        best_idx = -1
        best_key: tuple[int, float, float, int] | None = None
        for idx in remaining:
            item = pool[idx]
            value = lam * relevance[idx]
            is_duplicate = False
            if diversify:
                value -= (1.0 - lam) * max_overlap[idx]
                value -= source_penalty(
                    per_source[item.source],
                    config.source_penalty_weight,
                    config.max_per_source_soft,
                )
                is_duplicate = bool(selected) and max_overlap[idx] >= config.duplicate_threshold
            key = (0 if is_duplicate else 1, value, item.score, -idx)
            if best_key is None or key > best_key:
                best_key = key
                best_idx = idx

        chosen = pool[best_idx]
        selected.append(chosen)
        per_source[chosen.source] += 1
        remaining.remove(best_idx)
        for idx in remaining:
            overlap = similarity.similarity(pool[idx].chunk_id, chosen.chunk_id)
            if overlap > max_overlap[idx]:
                max_overlap[idx] = overlap
    return selected

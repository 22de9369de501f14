"""Hybrid (vector + lexical) scoring over stored chunks."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
import math
import re

from memory_recall.query_expansion import expand_query, extract_keywords, token_set_with_stems, tokenize
from memory_recall.store import MemoryChunk

BM25_K1 = 1.2
BM25_B = 0.75
COVERAGE_WEIGHT = 0.35
PHRASE_BOOST = 0.2
MIN_PHRASE_CHARS = 8
MAX_LEXICAL_SCORE = 1.25


@dataclass
class SearchResult:
    """One memory hit; ``score`` is rewritten by each pipeline stage."""

    chunk_id: str
    source: str
    content: str
    content_hash: str
    updated_at: int
    score: float
    vector_score: float = 0.0
    text_score: float = 0.0
    bm25_score: float = 0.0
    decay_multiplier: float = 1.0


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of unit vectors; 0.0 for empty or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    score = sum(x * y for x, y in zip(a, b, strict=True))
    if not math.isfinite(score):
        return 0.0
    return max(-1.0, min(1.0, score))


def keyword_coverage(keywords: Sequence[str], content: str) -> float:
    """Fraction of ``keywords`` present in the content's token set."""
    if not keywords:
        return 0.0
    tokens = token_set_with_stems(content)
    if not tokens:
        return 0.0
    matches = sum(1 for keyword in keywords if keyword in tokens)
    return matches / len(keywords)


def bm25_scores(terms: Sequence[str], documents: Sequence[Sequence[str]]) -> list[float]:
    """Okapi BM25 of each tokenized document, scaled so the best one is 1.0."""
    unique_terms = list(dict.fromkeys(terms))
    if not unique_terms or not documents:
        return [0.0 for _ in documents]

    total = len(documents)
    avg_len = sum(len(doc) for doc in documents) / total
    token_sets = [set(doc) for doc in documents]
    idf = {}
    for term in unique_terms:
        df = sum(1 for tokens in token_sets if term in tokens)
        idf[term] = math.log(1 + (total - df + 0.5) / (df + 0.5))

    scores: list[float] = []
    for doc in documents:
        counts = Counter(doc)
        length_norm = 1 - BM25_B + BM25_B * (len(doc) / max(1.0, avg_len))
        score = 0.0
        for term in unique_terms:
            freq = counts.get(term, 0)
            if freq:
                score += idf[term] * (freq * (BM25_K1 + 1)) / max(1e-4, freq + BM25_K1 * length_norm)
        scores.append(score)

    best = max(scores)
    if best <= 0:
        return scores
    return [score / best for score in scores]


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", str(text or "").lower()).strip()


def phrase_boost(query: str, content: str) -> float:
    """Bonus when the whole query appears verbatim (case/whitespace-insensitive)."""
    phrase = _collapse(query)
    if len(phrase) < MIN_PHRASE_CHARS:
        return 0.0
    return PHRASE_BOOST if phrase in _collapse(content) else 0.0


def hybrid_search(
    query: str,
    query_embedding: Sequence[float],
    chunks: Sequence[MemoryChunk],
    *,
    vector_weight: float = 0.7,
    text_weight: float = 0.3,
    limit: int | None = None,
) -> list[SearchResult]:
    """Score every chunk and return the best ``limit`` by combined score.

    The lexical signal is BM25 over the expanded query, plus a share of
    keyword coverage and a verbatim-phrase bonus, clamped to
    ``[0, MAX_LEXICAL_SCORE]``.
    """
    if not chunks:
        return []
    expanded = expand_query(query)
    keywords = extract_keywords(expanded)
    bm25 = bm25_scores(tokenize(expanded), [tokenize(chunk.content) for chunk in chunks])

    scored: list[SearchResult] = []
    for chunk, bm25_score in zip(chunks, bm25, strict=True):
        vector_score = cosine_similarity(query_embedding, chunk.embedding)
        lexical = bm25_score + COVERAGE_WEIGHT * keyword_coverage(keywords, chunk.content)
        lexical += phrase_boost(query, chunk.content)
        text_score = max(0.0, min(MAX_LEXICAL_SCORE, lexical))
        scored.append(
            SearchResult(
                chunk_id=chunk.id,
                source=chunk.source,
                content=chunk.content,
                content_hash=chunk.content_hash,
                updated_at=chunk.updated_at,
                score=(vector_weight * vector_score) + (text_weight * text_score),
                vector_score=vector_score,
                text_score=text_score,
                bm25_score=bm25_score,
            )
        )
    scored.sort(key=lambda item: (-item.score, item.chunk_id))
    if limit is not None:
        return scored[: max(1, int(limit))]
    return scored

import pytest

from memory_recall.config import MmrConfig
from memory_recall.hybrid import SearchResult
from memory_recall.mmr import apply_mmr_rerank, jaccard_similarity, normalize_scores, source_penalty


def _result(chunk_id: str, score: float, content: str, source: str | None = None) -> SearchResult:
    return SearchResult(
        chunk_id=chunk_id,
        source=source or f"/mem/{chunk_id}.md",
        content=content,
        content_hash=f"h-{chunk_id}",
        updated_at=1_000,
        score=score,
    )


def _ids(results: list[SearchResult]) -> list[str]:
    return [item.chunk_id for item in results]


def test_jaccard_and_normalization():
    assert jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
    assert jaccard_similarity(set(), set()) == 0.0
    assert normalize_scores([_result("a", 0.4, "x"), _result("b", 0.4, "y")]) == [1.0, 1.0]
    assert normalize_scores([_result("a", 0.2, "x"), _result("b", 0.6, "y")]) == [0.0, 1.0]
    assert normalize_scores([]) == []


def test_source_penalty_grows_past_soft_max():
    assert source_penalty(0, 0.1, 2) == 0.0
    assert source_penalty(1, 0.1, 2) == pytest.approx(0.1)
    assert source_penalty(2, 0.1, 2) == pytest.approx(0.3)
    assert source_penalty(3, 0.1, 2) == pytest.approx(0.5)


def test_lambda_one_is_relevance_order():
    pool = [
        _result("b", 0.5, "alpha beta", source="/mem/s.md"),
        _result("a", 0.9, "alpha beta", source="/mem/s.md"),
        _result("c", 0.7, "alpha beta", source="/mem/s.md"),
        _result("d", 0.7, "gamma", source="/mem/t.md"),
    ]

    reranked = apply_mmr_rerank(pool, MmrConfig(lambda_=1.0))

    assert _ids(reranked) == ["a", "c", "d", "b"]


def test_lambda_zero_prefers_novel_content():
    pool = [
        _result("a", 1.0, "alpha beta gamma"),
        _result("a2", 0.9, "alpha beta gamma"),
        _result("b", 0.5, "delta epsilon zeta"),
    ]

    reranked = apply_mmr_rerank(pool, MmrConfig(lambda_=0.0))

    assert _ids(reranked) == ["a", "b", "a2"]


def test_near_duplicates_are_deferred():
    pool = [
        _result("weather", 0.9, "Weather in Austin is sunny today"),
        _result("weather-copy", 0.85, "Weather in Austin is sunny today"),
        _result("profile", 0.1, "My timezone is EST"),
    ]

    reranked = apply_mmr_rerank(pool, MmrConfig(), top_k=2)

    assert _ids(reranked) == ["weather", "profile"]


def test_same_source_items_are_penalized():
    pool = [
        _result("s1a", 1.0, "one two", source="/mem/s1.md"),
        _result("s1b", 0.95, "three four", source="/mem/s1.md"),
        _result("s1c", 0.9, "five six", source="/mem/s1.md"),
        _result("s2", 0.6, "seven eight", source="/mem/s2.md"),
    ]
    config = MmrConfig(source_penalty_weight=0.5, max_per_source_soft=1)

    reranked = apply_mmr_rerank(pool, config, top_k=2)

    assert _ids(reranked) == ["s1a", "s2"]


def test_disabled_rerank_is_score_order_and_top_k_is_clamped():
    pool = [_result("a", 0.2, "x"), _result("b", 0.8, "y"), _result("c", 0.5, "z")]

    assert _ids(apply_mmr_rerank(pool, MmrConfig(enabled=False), top_k=2)) == ["b", "c"]
    assert len(apply_mmr_rerank(pool, MmrConfig(), top_k=50)) == 3
    assert apply_mmr_rerank([], MmrConfig(), top_k=5) == []


def test_lambda_alias_is_accepted():
    assert MmrConfig(**{"lambda": 0.3}).lambda_ == 0.3

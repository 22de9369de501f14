"""Age-based, intent-aware score decay."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
import math
from typing import Literal

from memory_recall.config import DecayConfig
from memory_recall.hybrid import SearchResult
from memory_recall.query_expansion import tokenize

DAY_MS = 86_400_000

QueryIntent = Literal["temporal", "evergreen", "mixed", "neutral"]

TEMPORAL_TERMS = frozenset(
    {
        "today", "tonight", "tomorrow", "yesterday", "now", "current", "currently",
        "latest", "recent", "recently", "new", "newest", "status", "update", "updates",
        "week", "weekend", "morning", "upcoming", "ongoing", "progress",
    }
)
EVERGREEN_TERMS = frozenset(
    {
        "preference", "preferences", "prefer", "preferred", "favorite", "favourite",
        "timezone", "birthday", "identity", "name", "pronouns", "allergy", "allergies",
        "address", "hometown", "family", "spouse", "partner", "always", "never", "usually",
        "dislike", "hate", "profile",
    }
)


def classify_query_intent(query: str) -> QueryIntent:
    tokens = set(tokenize(query))
    temporal = bool(tokens & TEMPORAL_TERMS)
    evergreen = bool(tokens & EVERGREEN_TERMS)
    if temporal and evergreen:
        return "mixed"
    if temporal:
        return "temporal"
    if evergreen:
        return "evergreen"
    return "neutral"


def resolve_half_life(intent: QueryIntent, config: DecayConfig) -> float:
    if intent == "temporal":
        return config.temporal_half_life_days
    if intent == "evergreen":
        return config.evergreen_half_life_days
    return config.half_life_days


def decay_multiplier(age_days: float, half_life_days: float, min_multiplier: float) -> float:
    """``max(min_multiplier, exp(-ln2 / half_life * age))``; future ages count as 0."""
    decay_lambda = math.log(2) / max(1e-9, float(half_life_days))
    return max(float(min_multiplier), math.exp(-decay_lambda * max(0.0, float(age_days))))


def _valid_timestamp(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(float(value))
        and float(value) > 0
    )


def apply_temporal_decay(
    results: Sequence[SearchResult],
    *,
    query: str,
    config: DecayConfig,
    now_ms: float,
) -> list[SearchResult]:
    """Return decayed copies of ``results`` sorted by their new score."""
    if not config.enabled:
        return list(results)
    half_life = resolve_half_life(classify_query_intent(query), config)
    decayed: list[SearchResult] = []
    for item in results:
        if not _valid_timestamp(item.updated_at):
            decayed.append(replace(item))
            continue
        age_days = (float(now_ms) - float(item.updated_at)) / DAY_MS
        multiplier = decay_multiplier(age_days, half_life, config.min_multiplier)
        decayed.append(replace(item, score=item.score * multiplier, decay_multiplier=multiplier))
    decayed.sort(key=lambda item: (-item.score, item.chunk_id))
    return decayed

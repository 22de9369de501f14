"""Prompt-ready recall context built from memory search results."""

from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING

from memory_recall.query_expansion import extract_keywords, tokenize

if TYPE_CHECKING:
    from memory_recall.manager import MemoryIndexManager


RECALL_SECTION_HEADER = "## Live Memory Recall"


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 3.5)


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def _split_sentences(text: str) -> list[str]:
    collapsed = re.sub(r"\s+", " ", str(text or "")).strip()
    return [part.strip() for part in re.split(r"(?<=[.!?])\s+", collapsed) if part.strip()]


def extract_salient_snippet(content: str, query_keywords: list[str], max_chars: int) -> str:
    """Pick the sentences with the densest keyword overlap, within ``max_chars``."""
    sentences = _split_sentences(content)
    if not sentences:
        return _truncate(str(content or "").strip(), max_chars)

    keyword_set = set(query_keywords)
    ranked: list[tuple[float, int, str]] = []
    for idx, sentence in enumerate(sentences):
        tokens = tokenize(sentence)
        overlap = sum(1 for token in tokens if token in keyword_set)
        density = overlap / len(tokens) if tokens else 0.0
        position_bias = max(0.0, 1.0 - idx * 0.04)
        ranked.append((overlap * 1.5 + density * 2 + position_bias, idx, sentence))
    ranked.sort(key=lambda item: (-item[0], item[1]))

    selected: list[str] = []
    used = 0
    for _score, _idx, sentence in ranked:
        extra = len(sentence) + (1 if selected else 0)
        if used + extra > max_chars:
            continue
        selected.append(sentence)
        used += extra
        if used >= max_chars * 0.85:
            break

    if not selected:
        return _truncate(sentences[0], max_chars)
    return _truncate(" ".join(selected), max_chars)


def source_label(source: str) -> str:
    parts = [part for part in str(source or "").replace("\\", "/").split("/") if part]
    if not parts:
        return "unknown"
    return "/".join(parts[-2:])


def _fingerprint(text: str) -> str:
    normalized = re.sub(r"\s+", " ", str(text or "").lower())
    normalized = re.sub(r"[^a-z0-9 ]+", "", normalized).strip()
    return normalized[:180]


async def build_recall_context(
    manager: MemoryIndexManager,
    query: str,
    *,
    top_k: int = 3,
    max_chars: int = 2200,
    max_tokens: int = 480,
) -> str:
    """Format the best memory hits for ``query`` as numbered prompt blocks."""
    cleaned = str(query or "").strip()
    if not cleaned:
        return ""
    top_k = max(1, int(top_k))
    max_chars = max(200, int(max_chars))
    max_tokens = max(80, int(max_tokens))
    keywords = extract_keywords(cleaned)

    results = await manager.search(cleaned, top_k)
    if not results:
        return ""

    per_block_chars = max(180, max_chars // max(1, min(len(results), top_k)))
    blocks: list[str] = []
    used_chars = 0
    used_tokens = 0
    seen: set[str] = set()
    for position, result in enumerate(results, start=1):
        snippet = extract_salient_snippet(result.content, keywords, min(700, per_block_chars + 220))
        if not snippet:
            continue
        fingerprint = _fingerprint(snippet)
        if not fingerprint or fingerprint in seen:
            continue
        seen.add(fingerprint)

        block = f"[{position}] {source_label(result.source)} score={result.score:.3f}\n{snippet}"
        separator = 2 if blocks else 0
        block_tokens = estimate_tokens(" " * separator + block)
        if used_chars + separator + len(block) > max_chars or used_tokens + block_tokens > max_tokens:
            break
        blocks.append(block)
        used_chars += separator + len(block)
        used_tokens += block_tokens
    return "\n\n".join(blocks).strip()


def inject_recall_section(system_prompt: str, recall_context: str) -> str:
    """Append the recall section once; a prompt that already has one is returned as-is."""
    base = str(system_prompt or "")
    context = str(recall_context or "").strip()
    if not context or RECALL_SECTION_HEADER in base:
        return base
    return f"{base}\n\n{RECALL_SECTION_HEADER}\nUse this indexed context when relevant:\n{context}"

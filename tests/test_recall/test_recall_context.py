import pytest

from memory_recall.config import MemoryConfig
from memory_recall.embeddings import LocalHashEmbeddingProvider
from memory_recall.manager import MemoryIndexManager
from memory_recall.recall import (
    RECALL_SECTION_HEADER,
    build_recall_context,
    estimate_tokens,
    extract_salient_snippet,
    inject_recall_section,
    source_label,
)


def test_salient_snippet_prefers_keyword_sentences():
    content = "Intro sentence here. The timezone is EST. Other words."

    assert extract_salient_snippet(content, ["timezone"], 30) == "The timezone is EST."


def test_salient_snippet_truncates_single_long_sentence():
    snippet = extract_salient_snippet("word " * 100, ["word"], 40)

    assert snippet.endswith("...")
    assert len(snippet) <= 43


def test_source_label_keeps_last_two_segments():
    assert source_label("/home/me/memory/profile.md") == "memory/profile.md"
    assert source_label("C:\\notes\\memory\\today.md") == "memory/today.md"
    assert source_label("") == "unknown"


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcdefg") == 2


def test_inject_recall_section_is_idempotent():
    once = inject_recall_section("You are helpful.", "[1] memory/profile.md score=0.500\nMy timezone is EST")
    twice = inject_recall_section(once, "[1] something else")

    assert once.count(RECALL_SECTION_HEADER) == 1
    assert twice == once
    assert inject_recall_section("base", "   ") == "base"


@pytest.mark.asyncio
async def test_recall_context_is_bounded_and_mentions_the_fact(tmp_path):
    memory_dir = tmp_path / "memory"
    memory_dir.mkdir()
    (memory_dir / "profile.md").write_text(
        "# Profile\n\nMy timezone is America/New_York and my preferred stack is TypeScript.\n",
        encoding="utf-8",
    )
    (memory_dir / "noise.md").write_text(
        "Unrelated build logs and release notes that should rank lower for timezone queries.\n",
        encoding="utf-8",
    )
    config = MemoryConfig(source_dirs=[str(memory_dir)], db_path=str(tmp_path / "memory.db"))
    manager = MemoryIndexManager(config, provider=LocalHashEmbeddingProvider())
    try:
        await manager.sync()

        context = await build_recall_context(manager, "what is my timezone", top_k=3, max_chars=320, max_tokens=80)

        assert context
        assert "timezone" in context.lower()
        assert len(context) <= 320
        assert estimate_tokens(context) <= 80
        assert context.startswith("[1] memory/")
        assert await build_recall_context(manager, "   ") == ""
    finally:
        manager.close()


@pytest.mark.asyncio
async def test_recall_context_skips_duplicate_snippets(tmp_path):
    memory_dir = tmp_path / "memory"
    memory_dir.mkdir()
    for name in ("a.md", "b.md"):
        (memory_dir / name).write_text("Standup moved to 10am on Mondays.", encoding="utf-8")
    config = MemoryConfig(
        source_dirs=[str(memory_dir)],
        db_path=str(tmp_path / "memory.db"),
        mmr={"enabled": False},
    )
    manager = MemoryIndexManager(config)
    try:
        await manager.sync()

        context = await build_recall_context(manager, "standup time")

        assert context.count("Standup moved to 10am") == 1
    finally:
        manager.close()

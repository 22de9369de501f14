"""Memory index manager: incremental indexing, sync and the search pipeline."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
import time
from typing import Literal
import uuid

from memory_recall.chunker import chunk_markdown, hash_text
from memory_recall.config import MemoryConfig
from memory_recall.embeddings import (
    EmbeddingProvider,
    LocalHashEmbeddingProvider,
    create_embedding_provider,
)
from memory_recall.hybrid import SearchResult, hybrid_search
from memory_recall.logging import get_logger
from memory_recall.mmr import apply_mmr_rerank
from memory_recall.store import IndexStore, MemoryChunk
from memory_recall.temporal_decay import apply_temporal_decay, classify_query_intent


log = get_logger(__name__)

SearchMode = Literal["hybrid", "fallback-local", "fallback-lexical"]
_MAX_DIAGNOSTICS = 50
_STALE_MTIME_SLACK_MS = 1000


@dataclass
class IndexReport:
    """Outcome of one directory pass."""

    directory: str
    files_seen: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_skipped: int = 0
    sources_removed: int = 0


@dataclass
class SyncReport:
    directories: list[IndexReport] = field(default_factory=list)

    @property
    def files_indexed(self) -> int:
        return sum(item.files_indexed for item in self.directories)

    @property
    def sources_removed(self) -> int:
        return sum(item.sources_removed for item in self.directories)


@dataclass
class SearchDiagnostics:
    mode: SearchMode = "hybrid"
    intent: str = "neutral"
    stale_sources_before: int = 0
    stale_sources_after: int = 0
    stale_reindex_attempted: bool = False
    stale_reindex_completed: bool = False
    stale_reindex_timed_out: bool = False
    fallback_used: bool = False
    index_fallback_used: bool = False
    candidate_count: int = 0
    result_count: int = 0
    latency_ms: int = 0
    updated_at_ms: int = 0


@dataclass
class SearchOutcome:
    search_id: str
    results: list[SearchResult]
    diagnostics: SearchDiagnostics


def _walk_markdown_files(directory: Path) -> list[Path]:
    """All ``*.md`` files below ``directory``; unreadable subtrees are skipped."""
    found: list[Path] = []
    try:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError:
        return found
    for entry in entries:
        try:
            if entry.is_dir() and not entry.is_symlink():
                found.extend(_walk_markdown_files(entry))
            elif entry.is_file() and entry.name.lower().endswith(".md"):
                found.append(entry)
        except OSError:
            continue
    return found


def _is_under(path: str, directory: Path) -> bool:
    try:
        return Path(path).is_relative_to(directory)
    except ValueError:
        return False


class MemoryIndexManager:
    """Owns the store connection, change-detection map, dirty flag and sync task."""

    def __init__(
        self,
        config: MemoryConfig,
        *,
        store: IndexStore | None = None,
        provider: EmbeddingProvider | None = None,
        fallback_provider: EmbeddingProvider | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.store = store or IndexStore(config.resolved_db_path())
        self.provider = provider or create_embedding_provider(config, self.store)
        self.fallback_provider = fallback_provider or (
            LocalHashEmbeddingProvider() if config.embedding_fallback_to_local else None
        )
        self._clock = clock
        self._file_hashes: dict[str, str] = {}
        self._dirty = True
        self._sync_task: asyncio.Task[SyncReport] | None = None
        self._warm_task: asyncio.Task[SyncReport] | None = None
        self._stale_scan: tuple[float, list[str]] = (0.0, [])
        self._stale_reindex_task: asyncio.Task[None] | None = None
        self._index_fallback_count = 0
        self._last_diagnostics = SearchDiagnostics()
        self._diagnostics_by_id: OrderedDict[str, SearchDiagnostics] = OrderedDict()

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def syncing(self) -> bool:
        return self._sync_task is not None

    def mark_dirty(self) -> None:
        self._dirty = True

    def close(self) -> None:
        self.store.close()

    async def aclose(self) -> None:
        """Close provider HTTP clients, then the store."""
        for provider in (self.provider, self.fallback_provider):
            closer = getattr(provider, "aclose", None)
            if closer is not None:
                await closer()
        self.close()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # Indexing

    async def _embed_for_index(self, texts: list[str]) -> list[list[float]]:
        try:
            return await self.provider.embed_batch(texts)
        except Exception as exc:
            if self.fallback_provider is None:
                raise
            self._index_fallback_count += 1
            log.warning(
                "Memory index degraded; using local embeddings",
                phase="index",
                reason="index-embedding-failed",
                error=str(exc),
            )
            return await self.fallback_provider.embed_batch(texts)

    async def index_file(self, path: Path | str) -> bool:
        """Re-index one Markdown file; returns False when its content is unchanged."""
        abs_path = Path(path).expanduser().resolve()
        source = str(abs_path)
        content = abs_path.read_text(encoding="utf-8", errors="ignore")
        updated_at = int(abs_path.stat().st_mtime_ns // 1_000_000)
        file_hash = hash_text(content)
        if self._file_hashes.get(source) == file_hash:
            return False

        chunks = chunk_markdown(content, source, self.config.chunk_size, self.config.chunk_overlap)
        vectors = await self._embed_for_index([chunk.content for chunk in chunks]) if chunks else []
        rows = [
            MemoryChunk(
                id=chunk.id,
                source=source,
                content=chunk.content,
                embedding=vectors[idx] if idx < len(vectors) else [],
                content_hash=chunk.content_hash,
                updated_at=updated_at,
            )
            for idx, chunk in enumerate(chunks)
        ]
        self.store.replace_source_chunks(source, rows)
        self._file_hashes[source] = file_hash
        self._stale_scan = (0.0, [])
        log.info("Indexed memory file", source=source, chunks=len(rows))
        return True

    async def index_directory(self, directory: Path | str) -> IndexReport:
        """Index every Markdown file under ``directory`` and drop vanished sources."""
        abs_dir = Path(directory).expanduser().resolve()
        report = IndexReport(directory=str(abs_dir))
        if not abs_dir.is_dir():
            log.warning("Memory source directory missing; skipping", directory=str(abs_dir))
            self._dirty = False
            return report

        seen: set[str] = set()
        for file_path in _walk_markdown_files(abs_dir):
            seen.add(str(file_path.resolve()))
            report.files_seen += 1
            try:
                changed = await self.index_file(file_path)
            except OSError as exc:
                report.files_skipped += 1
                log.debug("Skipping unreadable memory file", path=str(file_path), error=str(exc))
                continue
            if changed:
                report.files_indexed += 1
            else:
                report.files_unchanged += 1

        report.sources_removed = self.reconcile(abs_dir, seen)
        self._dirty = False
        log.info("Indexed memory directory", **asdict(report))
        return report

    def reconcile(self, directory: Path | str, seen_sources: set[str]) -> int:
        """Delete stored sources under ``directory`` that were not seen in the last walk."""
        abs_dir = Path(directory).expanduser().resolve()
        stale = [
            source
            for source in self.store.distinct_sources()
            if _is_under(source, abs_dir) and source not in seen_sources
        ]
        if not stale:
            return 0
        self.store.delete_sources(stale)
        for source in stale:
            self._file_hashes.pop(source, None)
        self._stale_scan = (0.0, [])
        log.info("Removed vanished memory sources", directory=str(abs_dir), sources=len(stale))
        return len(stale)

    async def _run_sync(self) -> SyncReport:
        report = SyncReport()
        for directory in self.config.resolved_source_dirs():
            report.directories.append(await self.index_directory(directory))
        self._dirty = False
        return report

    def _ensure_sync_task(self) -> asyncio.Task[SyncReport]:
        if self._sync_task is None:
            task = asyncio.get_running_loop().create_task(self._run_sync())
            self._sync_task = task

            def _clear(done: asyncio.Task[SyncReport]) -> None:
                if self._sync_task is done:
                    self._sync_task = None

            task.add_done_callback(_clear)
        return self._sync_task

    async def sync(self) -> SyncReport:
        """Re-index all source dirs; concurrent callers share one in-flight pass."""
        return await asyncio.shield(self._ensure_sync_task())

    def warm_session(self) -> bool:
        """Fire-and-forget sync at a session/turn boundary when the index is dirty."""
        if not self.config.sync_on_session_start or not self._dirty or self._sync_task is not None:
            return False
        task = self._ensure_sync_task()
        self._warm_task = task
        task.add_done_callback(self._on_warm_done)
        return True

    def _on_warm_done(self, task: asyncio.Task[SyncReport]) -> None:
        if self._warm_task is task:
            self._warm_task = None
        if task.cancelled():
            self._dirty = True
            return
        exc = task.exception()
        if exc is not None:
            self._dirty = True
            log.warning("Session warm sync failed", error=str(exc))

    # Stale sources

    def _scan_stale_sources(self, force: bool = False) -> list[str]:
        now = self._clock()
        scanned_at, cached = self._stale_scan
        ttl_seconds = self.config.search.stale_scan_ttl_ms / 1000.0
        if not force and ttl_seconds > 0 and scanned_at > 0 and now - scanned_at <= ttl_seconds:
            return list(cached)
        stale: list[str] = []
        for source, updated_at in self.store.distinct_sources().items():
            try:
                mtime_ms = Path(source).stat().st_mtime_ns // 1_000_000
            except OSError:
                stale.append(source)
                continue
            if mtime_ms > updated_at + _STALE_MTIME_SLACK_MS:
                stale.append(source)
        self._stale_scan = (now, stale)
        return list(stale)

    async def _refresh_sources(self, sources: list[str]) -> None:
        missing: list[str] = []
        for source in sources:
            if not Path(source).is_file():
                missing.append(source)
                continue
            self._file_hashes.pop(source, None)
            await self.index_file(source)
        if missing:
            self.store.delete_sources(missing)
            for source in missing:
                self._file_hashes.pop(source, None)

    async def _ensure_stale_reindex(self, sources: list[str]) -> tuple[bool, bool]:
        """Returns (completed, timed_out) for a reindex bounded by the search budget."""
        if self._stale_reindex_task is None:
            task = asyncio.get_running_loop().create_task(self._refresh_sources(sources))
            self._stale_reindex_task = task

            def _clear(done: asyncio.Task[None]) -> None:
                if self._stale_reindex_task is done:
                    self._stale_reindex_task = None
                if not done.cancelled() and done.exception() is not None:
                    self._dirty = True
                    log.warning("Stale memory reindex failed", error=str(done.exception()))

            task.add_done_callback(_clear)
        budget = self.config.search.stale_reindex_budget_ms / 1000.0
        done, _pending = await asyncio.wait({self._stale_reindex_task}, timeout=budget or None)
        if not done:
            return False, True
        finished = next(iter(done))
        return (not finished.cancelled() and finished.exception() is None), False

    # Search

    async def _embed_query(self, query: str) -> tuple[list[float], SearchMode]:
        try:
            return await self.provider.embed(query), "hybrid"
        except Exception as exc:
            if self.fallback_provider is None:
                raise
            log.warning(
                "Memory search degraded; using local query embedding",
                phase="search",
                reason="query-embedding-failed",
                error=str(exc),
            )
            try:
                return await self.fallback_provider.embed(query), "fallback-local"
            except Exception as fallback_exc:
                log.warning(
                    "Memory search degraded; lexical scoring only",
                    phase="search",
                    reason="fallback-embedding-failed",
                    error=str(fallback_exc),
                )
                return [], "fallback-lexical"

    async def search_with_diagnostics(
        self,
        query: str,
        top_k: int | None = None,
        search_id: str | None = None,
    ) -> SearchOutcome:
        """Run the full retrieval pipeline and record diagnostics for it."""
        started = time.perf_counter()
        index_fallbacks_at_start = self._index_fallback_count
        resolved_id = str(search_id or uuid.uuid4())
        cleaned = str(query or "").strip()
        requested = max(1, int(top_k or self.config.top_k))
        diagnostics = SearchDiagnostics(intent=classify_query_intent(cleaned))

        results: list[SearchResult] = []
        if cleaned:
            stale_before = self._scan_stale_sources() if self.config.search.refresh_stale_sources else []
            diagnostics.stale_sources_before = len(stale_before)
            if stale_before:
                diagnostics.stale_reindex_attempted = True
                completed, timed_out = await self._ensure_stale_reindex(stale_before)
                diagnostics.stale_reindex_completed = completed
                diagnostics.stale_reindex_timed_out = timed_out
                diagnostics.stale_sources_after = len(self._scan_stale_sources(force=completed))

            query_embedding, mode = await self._embed_query(cleaned)
            diagnostics.mode = mode
            chunks = self.store.load_chunks()
            lexical_only = mode == "fallback-lexical"
            candidates = hybrid_search(
                cleaned,
                query_embedding,
                chunks,
                vector_weight=0.0 if lexical_only else self.config.search.vector_weight,
                text_weight=1.0 if lexical_only else self.config.search.text_weight,
                limit=requested * self.config.search.candidate_multiplier,
            )
            decayed = apply_temporal_decay(
                candidates,
                query=cleaned,
                config=self.config.decay,
                now_ms=self._now_ms(),
            )
            selected = apply_mmr_rerank(decayed, self.config.mmr, top_k=requested)
            results = sorted(selected, key=lambda item: -item.score)
            diagnostics.candidate_count = len(candidates)

        diagnostics.index_fallback_used = self._index_fallback_count > index_fallbacks_at_start
        diagnostics.fallback_used = (
            diagnostics.mode != "hybrid"
            or diagnostics.index_fallback_used
            or diagnostics.stale_sources_after > 0
        )
        diagnostics.result_count = len(results)
        diagnostics.latency_ms = int((time.perf_counter() - started) * 1000)
        diagnostics.updated_at_ms = self._now_ms()
        self._record_diagnostics(resolved_id, diagnostics)
        log.debug("Memory search complete", search_id=resolved_id, **asdict(diagnostics))
        return SearchOutcome(search_id=resolved_id, results=results, diagnostics=diagnostics)

    async def search(self, query: str, top_k: int | None = None) -> list[SearchResult]:
        outcome = await self.search_with_diagnostics(query, top_k)
        return outcome.results

    def _record_diagnostics(self, search_id: str, diagnostics: SearchDiagnostics) -> None:
        self._last_diagnostics = diagnostics
        self._diagnostics_by_id[search_id] = diagnostics
        self._diagnostics_by_id.move_to_end(search_id)
        while len(self._diagnostics_by_id) > _MAX_DIAGNOSTICS:
            self._diagnostics_by_id.popitem(last=False)

    def get_last_search_diagnostics(self) -> SearchDiagnostics:
        return SearchDiagnostics(**asdict(self._last_diagnostics))

    def get_search_diagnostics(self, search_id: str) -> SearchDiagnostics | None:
        found = self._diagnostics_by_id.get(str(search_id or "").strip())
        return SearchDiagnostics(**asdict(found)) if found else None

    async def get_source_content_by_chunk_id(self, chunk_id: str) -> str | None:
        source = self.store.get_chunk_source(chunk_id)
        if not source:
            return None
        try:
            return Path(source).read_text(encoding="utf-8", errors="ignore")
        except OSError:
            return None

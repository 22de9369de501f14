"""SQLite-backed index store: chunk rows plus a shared embedding cache."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
import sqlite3
import time

from memory_recall.embeddings import deserialize_embedding, serialize_embedding
from memory_recall.exceptions import StoreClosedError
from memory_recall.logging import get_logger


log = get_logger(__name__)

_SQLITE_MAX_VARIABLES = 500


@dataclass
class MemoryChunk:
    """One stored chunk."""

    id: str
    source: str
    content: str
    embedding: list[float] = field(default_factory=list)
    content_hash: str = ""
    updated_at: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class IndexStore:
    """One SQLite connection holding the ``chunks`` and ``embedding_cache`` tables."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser() if str(db_path) != ":memory:" else Path(":memory:")
        self._conn: sqlite3.Connection | None = None
        self._ensure_db()

    def _ensure_db(self) -> None:
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chunks (
                id TEXT PRIMARY KEY,
                source TEXT NOT NULL,
                content TEXT NOT NULL,
                embedding BLOB,
                content_hash TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_content_hash ON chunks(content_hash)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS embedding_cache (
                content_hash TEXT PRIMARY KEY,
                embedding BLOB NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.commit()
        self._conn = conn

    def _conn_or_raise(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreClosedError(str(self.db_path))
        return self._conn

    @property
    def closed(self) -> bool:
        return self._conn is None

    def close(self) -> None:
        """Close SQLite resources."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # Chunks

    def replace_source_chunks(self, source: str, chunks: Sequence[MemoryChunk]) -> None:
        """Atomically swap every chunk row of ``source`` for ``chunks``."""
        conn = self._conn_or_raise()
        try:
            conn.execute("DELETE FROM chunks WHERE source = ?", (source,))
            conn.executemany(
                """
                INSERT OR REPLACE INTO chunks (id, source, content, embedding, content_hash, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk.id,
                        source,
                        chunk.content,
                        serialize_embedding(chunk.embedding),
                        chunk.content_hash,
                        int(chunk.updated_at),
                    )
                    for chunk in chunks
                ],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def delete_sources(self, sources: Iterable[str]) -> int:
        """Delete all chunk rows for ``sources`` in one transaction."""
        targets = sorted(set(sources))
        if not targets:
            return 0
        conn = self._conn_or_raise()
        try:
            cursor = conn.executemany("DELETE FROM chunks WHERE source = ?", [(s,) for s in targets])
            deleted = cursor.rowcount
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        return max(0, int(deleted))

    def load_chunks(self) -> list[MemoryChunk]:
        """Load every chunk with its embedding decoded.

        A row whose embedding cannot be decoded is returned with an empty
        vector so it can still be matched lexically.
        """
        rows = self._conn_or_raise().execute(
            "SELECT id, source, content, embedding, content_hash, updated_at FROM chunks ORDER BY source, id"
        ).fetchall()
        chunks: list[MemoryChunk] = []
        for row in rows:
            embedding = deserialize_embedding(row[3])
            if embedding is None:
                log.debug("Stored chunk embedding is malformed; ignoring vector", chunk_id=row[0])
                embedding = []
            chunks.append(
                MemoryChunk(
                    id=str(row[0]),
                    source=str(row[1]),
                    content=str(row[2]),
                    embedding=embedding,
                    content_hash=str(row[4]),
                    updated_at=int(row[5] or 0),
                )
            )
        return chunks

    def source_chunk_ids(self, source: str) -> list[str]:
        rows = self._conn_or_raise().execute(
            "SELECT id FROM chunks WHERE source = ? ORDER BY id",
            (source,),
        ).fetchall()
        return [str(row[0]) for row in rows]

    def count_chunks(self, source: str | None = None) -> int:
        conn = self._conn_or_raise()
        if source is None:
            row = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM chunks WHERE source = ?", (source,)).fetchone()
        return int(row[0]) if row else 0

    def distinct_sources(self) -> dict[str, int]:
        """Map each stored source to its newest ``updated_at``."""
        rows = self._conn_or_raise().execute(
            "SELECT source, MAX(updated_at) FROM chunks GROUP BY source ORDER BY source"
        ).fetchall()
        return {str(row[0]): int(row[1] or 0) for row in rows}

    def get_chunk_source(self, chunk_id: str) -> str | None:
        row = self._conn_or_raise().execute(
            "SELECT source FROM chunks WHERE id = ?",
            (chunk_id,),
        ).fetchone()
        return str(row[0]) if row else None

    # Embedding cache

    def get_cached_embeddings(self, content_hashes: Sequence[str]) -> dict[str, list[float]]:
        """Return decodable cache entries; corrupt rows count as misses."""
        conn = self._conn_or_raise()
        unique = list(dict.fromkeys(content_hashes))
        found: dict[str, list[float]] = {}
        for offset in range(0, len(unique), _SQLITE_MAX_VARIABLES):
            batch = unique[offset : offset + _SQLITE_MAX_VARIABLES]
            placeholders = ",".join("?" for _ in batch)
            rows = conn.execute(
                f"SELECT content_hash, embedding FROM embedding_cache WHERE content_hash IN ({placeholders})",
                batch,
            ).fetchall()
            for key, raw in rows:
                vector = deserialize_embedding(raw)
                if not vector:
                    log.warning("Ignoring malformed cached embedding", content_hash=key)
                    continue
                found[str(key)] = vector
        return found

    def put_cached_embeddings(
        self,
        entries: Sequence[tuple[str, list[float]]],
        *,
        provider: str,
        model: str,
    ) -> None:
        if not entries:
            return
        conn = self._conn_or_raise()
        now = _now_ms()
        try:
            conn.executemany(
                """
                INSERT OR REPLACE INTO embedding_cache (content_hash, embedding, provider, model, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(key, serialize_embedding(vector), provider, model, now) for key, vector in entries],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def count_cached_embeddings(self) -> int:
        row = self._conn_or_raise().execute("SELECT COUNT(*) FROM embedding_cache").fetchone()
        return int(row[0]) if row else 0

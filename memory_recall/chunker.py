"""Line-aware overlapping chunker for Markdown memory files."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib


@dataclass(frozen=True)
class TextChunk:
    """One chunk of a source document."""

    id: str
    index: int
    content: str
    content_hash: str
    start_line: int
    end_line: int


def hash_text(value: str) -> str:
    """Truncated SHA-256 digest used for file and chunk content hashes."""
    return hashlib.sha256(value.encode("utf-8", errors="ignore")).hexdigest()[:16]


def build_chunk_id(source_path: str, index: int, content_hash: str) -> str:
    return hash_text(f"{source_path}:{index}:{content_hash}")


def _split_long_lines(lines: list[str], limit: int) -> list[tuple[int, str]]:
    """Hard-split lines longer than ``limit``; keep their 1-based line numbers."""
    pieces: list[tuple[int, str]] = []
    for line_no, line in enumerate(lines, start=1):
        if len(line) <= limit:
            pieces.append((line_no, line))
            continue
        for offset in range(0, len(line), limit):
            pieces.append((line_no, line[offset : offset + limit]))
    return pieces


def chunk_markdown(
    content: str,
    source_path: str,
    chunk_size: int,
    chunk_overlap: int,
) -> list[TextChunk]:
    """Split ``content`` into overlapping windows of at most ``chunk_size`` chars.

    Lines are packed greedily into a window. The next window restarts on the
    trailing lines that cover ``chunk_overlap`` characters when the next line
    still fits beside them, and always moves forward by at least one line.
    Identical content at the same source path yields identical chunk ids.
    """
    chunk_size = max(1, int(chunk_size))
    chunk_overlap = max(0, min(int(chunk_overlap), chunk_size - 1))
    pieces = _split_long_lines(str(content or "").splitlines(), chunk_size)
    if not pieces:
        return []

    chunks: list[TextChunk] = []
    start = 0
    while start < len(pieces):
        end = start
        used = 0
        while end < len(pieces):
            piece_len = len(pieces[end][1]) + 1
            if used and used + piece_len > chunk_size + 1:
                break
            used += piece_len
            end += 1

        text = "\n".join(piece for _, piece in pieces[start:end]).strip()
        if text:
            index = len(chunks)
            content_hash = hash_text(text)
            chunks.append(
                TextChunk(
                    id=build_chunk_id(source_path, index, content_hash),
                    index=index,
                    content=text,
                    content_hash=content_hash,
                    start_line=pieces[start][0],
                    end_line=pieces[end - 1][0],
                )
            )
        if end >= len(pieces):
            break

        overlap_pieces = 0
        overlap_chars = 0
        idx = end - 1
        while idx > start and overlap_chars < chunk_overlap:
            overlap_chars += len(pieces[idx][1]) + 1
            overlap_pieces += 1
            idx -= 1
        # Drop the overlap when it leaves no room for the next piece.
        if overlap_pieces and overlap_chars + len(pieces[end][1]) + 1 > chunk_size + 1:
            overlap_pieces = 0
        start = end - overlap_pieces
    return chunks

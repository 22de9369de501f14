"""memory-recall - semantic memory retrieval for Markdown workspaces."""

__version__ = "0.1.0"

from memory_recall.config import Config, MemoryConfig
from memory_recall.hybrid import SearchResult
from memory_recall.manager import MemoryIndexManager

__all__ = ["Config", "MemoryConfig", "MemoryIndexManager", "SearchResult", "__version__"]

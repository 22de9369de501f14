"""Custom exceptions for memory-recall."""


class MemoryRecallError(Exception):
    """Base exception for memory-recall."""

    pass


class ConfigurationError(MemoryRecallError):
    """Configuration-related errors."""

    pass


class EmbeddingError(MemoryRecallError):
    """Embedding provider errors."""

    pass


class EmbeddingAPIError(EmbeddingError):
    """Remote embedding API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class IndexStoreError(MemoryRecallError):
    """Index store errors."""

    pass


class StoreClosedError(IndexStoreError):
    """Store used after close()."""

    def __init__(self, db_path: str):
        super().__init__(f"Memory index store is closed: {db_path}")
        self.db_path = db_path

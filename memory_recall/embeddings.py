"""Embedding providers: deterministic local hashing and cached OpenAI embeddings."""

from __future__ import annotations

from collections.abc import Iterable
import hashlib
import json
import math
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from memory_recall.config import MemoryConfig
from memory_recall.exceptions import ConfigurationError, EmbeddingAPIError, EmbeddingError
from memory_recall.logging import get_logger

if TYPE_CHECKING:
    from memory_recall.store import IndexStore


log = get_logger(__name__)

LOCAL_EMBEDDING_DIMENSIONS = 256
_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


class _RetryableStatusError(Exception):
    """Transient HTTP status; carries the response for the final error message."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"status={response.status_code}")
        self.response = response


class EmbeddingProvider(Protocol):
    provider_id: str
    model: str

    async def embed(self, text: str) -> list[float]:
        """Return one normalized embedding."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one normalized embedding per text, in input order."""


def normalize_embedding(values: Iterable[float]) -> list[float]:
    vector = [float(v) if isinstance(v, (float, int)) and math.isfinite(float(v)) else 0.0 for v in values]
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 1e-12:
        return vector
    return [v / norm for v in vector]


def build_embedding_hash(provider: str, model: str, text: str) -> str:
    """Cache key shared by every chunk/source carrying the same text."""
    raw = f"{provider}:{model}:{text}".encode("utf-8", errors="ignore")
    return hashlib.sha256(raw).hexdigest()[:16]


def serialize_embedding(embedding: list[float]) -> bytes:
    return json.dumps(embedding, ensure_ascii=True).encode("utf-8")


def deserialize_embedding(raw: bytes | str | None) -> list[float] | None:
    """Decode a stored vector; ``None`` when the payload is not a numeric list."""
    if raw is None:
        return None
    if isinstance(raw, memoryview):
        raw = raw.tobytes()
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if not isinstance(parsed, list):
        return None
    vector: list[float] = []
    for value in parsed:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        vector.append(float(value))
    return vector


class LocalHashEmbeddingProvider:
    """Offline provider: a vector derived from the text's SHA-256 bytes.

    Not semantically meaningful; it only keeps the pipeline numerically
    working when no remote provider is available.
    """

    provider_id = "local"
    model = "sha256-256"

    def __init__(self, dimensions: int = LOCAL_EMBEDDING_DIMENSIONS):
        self._dimensions = max(1, int(dimensions))

    async def embed(self, text: str) -> list[float]:
        digest = hashlib.sha256(str(text).encode("utf-8", errors="ignore")).digest()
        vector = [(digest[i % len(digest)] / 255.0) * 2.0 - 1.0 for i in range(self._dimensions)]
        return normalize_embedding(vector)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(text) for text in texts]


class OpenAIEmbeddingProvider:
    """OpenAI embeddings with a persistent per-text cache in the index store."""

    provider_id = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        store: IndexStore,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        max_input_chars: int = 8000,
        client: httpx.AsyncClient | None = None,
    ):
        self._api_key = str(api_key or "").strip()
        if not self._api_key:
            raise ConfigurationError("OpenAI embedding API key is required for provider=openai.")
        self.model = str(model).strip()
        self._store = store
        self._base_url = str(base_url or "").rstrip("/") or "https://api.openai.com/v1"
        self._timeout = httpx.Timeout(max(1.0, float(timeout_seconds)))
        self._max_retries = max(0, int(max_retries))
        self._retry_backoff = max(0.0, float(retry_backoff_seconds))
        self._max_input_chars = max(1, int(max_input_chars))
        self.client = client or httpx.AsyncClient(timeout=self._timeout)
        self.request_count = 0

    async def aclose(self) -> None:
        await self.client.aclose()

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0] if vectors else []

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not self._api_key:
            raise ConfigurationError("OpenAI embedding API key is required for provider=openai.")
        if not texts:
            return []

        prepared = [self._prepare_input(text) for text in texts]
        keys = [build_embedding_hash(self.provider_id, self.model, text) for text in prepared]
        cached = self._store.get_cached_embeddings(keys)

        results: list[list[float] | None] = [cached.get(key) for key in keys]
        miss_keys: list[str] = []
        miss_texts: list[str] = []
        for key, text, hit in zip(keys, prepared, results, strict=True):
            if hit is None and key not in miss_keys:
                miss_keys.append(key)
                miss_texts.append(text)

        if miss_texts:
            cache_hits = sum(1 for hit in results if hit is not None)
            vectors = await self._request_embeddings(miss_texts)
            fresh = dict(zip(miss_keys, vectors, strict=True))
            self._store.put_cached_embeddings(
                [(key, fresh[key]) for key in miss_keys],
                provider=self.provider_id,
                model=self.model,
            )
            results = [hit if hit is not None else fresh[key] for key, hit in zip(keys, results, strict=True)]
            log.debug(
                "Embedding batch resolved",
                model=self.model,
                inputs=len(texts),
                cache_hits=cache_hits,
                requested=len(miss_texts),
            )
        return [list(vector or []) for vector in results]

    def _prepare_input(self, text: str) -> str:
        value = str(text or "")
        if len(value) > self._max_input_chars:
            log.debug(
                "Truncating oversized embedding input",
                chars=len(value),
                limit=self._max_input_chars,
            )
            value = value[: self._max_input_chars]
        return value

    async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        self.request_count += 1
        response = await self.client.post(url, json=body, headers=headers, timeout=self._timeout)
        if response.status_code in _RETRYABLE_STATUS:
            raise _RetryableStatusError(response)
        return response

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            "Embedding request failed; retrying",
            attempt=retry_state.attempt_number,
            max_retries=self._max_retries,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else 0.0,
            error=str(exc),
        )

    async def _request_embeddings(self, texts: list[str]) -> list[list[float]]:
        url = f"{self._base_url}/embeddings"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        body = {"model": self.model, "input": texts}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._retry_backoff),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatusError)),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._post(url, body, headers)
        except httpx.TransportError as exc:
            raise EmbeddingError(f"OpenAI embeddings request failed: {exc}") from exc
        except _RetryableStatusError as exc:
            response = exc.response

        if not response.is_success:
            raise EmbeddingAPIError(
                f"OpenAI embeddings request failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        return self._parse_response(response, expected=len(texts))

    @staticmethod
    def _parse_response(response: httpx.Response, *, expected: int) -> list[list[float]]:
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise EmbeddingError("OpenAI embeddings response is not valid JSON") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != expected:
            got = len(data) if isinstance(data, list) else "none"
            raise EmbeddingError(f"OpenAI embeddings response returned {got} vectors for {expected} inputs")
        if all(isinstance(row, dict) and isinstance(row.get("index"), int) for row in data):
            data = sorted(data, key=lambda row: row["index"])
        vectors: list[list[float]] = []
        for row in data:
            raw = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(raw, list):
                raise EmbeddingError("OpenAI embeddings row missing list 'embedding'")
            vectors.append(normalize_embedding(raw))
        return vectors


def create_embedding_provider(config: MemoryConfig, store: IndexStore) -> EmbeddingProvider:
    """Create the configured embedding provider."""
    if config.embedding_provider == "local":
        return LocalHashEmbeddingProvider()
    return OpenAIEmbeddingProvider(
        api_key=config.require_api_key(),
        model=config.embedding_model,
        store=store,
        base_url=config.embedding_base_url,
        timeout_seconds=config.embedding_timeout_seconds,
        max_retries=config.embedding_max_retries,
        retry_backoff_seconds=config.embedding_retry_backoff_seconds,
        max_input_chars=config.embedding_max_input_chars,
    )

import hashlib
import math

import httpx
import pytest

from memory_recall.config import MemoryConfig
from memory_recall.embeddings import (
    LocalHashEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_embedding_hash,
    create_embedding_provider,
    deserialize_embedding,
    serialize_embedding,
)
from memory_recall.exceptions import ConfigurationError, EmbeddingAPIError, EmbeddingError
from memory_recall.store import IndexStore


EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


def _vector_for(text: str) -> list[float]:
    return [float(len(text)), 1.0]


def _ok_response(texts: list[str]) -> httpx.Response:
    return httpx.Response(
        200,
        json={"data": [{"index": i, "embedding": _vector_for(t)} for i, t in enumerate(texts)]},
        request=httpx.Request("POST", EMBEDDINGS_URL),
    )


class _FakeClient:
    """Answers every request with one vector per input unless scripted otherwise."""

    def __init__(self, scripted: list | None = None):
        self._scripted = list(scripted or [])
        self.calls: list[dict] = []

    async def post(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self._scripted:
            step = self._scripted.pop(0)
            if isinstance(step, Exception):
                raise step
            return step
        return _ok_response(kwargs["json"]["input"])

    async def aclose(self) -> None:
        return None


def _provider(store: IndexStore, client: _FakeClient, **overrides) -> OpenAIEmbeddingProvider:
    options = {
        "api_key": "sk-test",
        "model": "text-embedding-3-small",
        "store": store,
        "max_retries": 0,
        "retry_backoff_seconds": 0.0,
        "client": client,
    }
    options.update(overrides)
    return OpenAIEmbeddingProvider(**options)


@pytest.fixture
def store(tmp_path):
    index_store = IndexStore(tmp_path / "memory.db")
    yield index_store
    index_store.close()


def _norm(vector: list[float]) -> float:
    return math.sqrt(sum(v * v for v in vector))


@pytest.mark.asyncio
async def test_local_provider_is_deterministic_and_unit_length():
    provider = LocalHashEmbeddingProvider()

    first = await provider.embed("My timezone is EST")
    second = await provider.embed("My timezone is EST")
    other = await provider.embed("Weather in Austin")

    assert first == second
    assert first != other
    assert len(first) == 256
    assert _norm(first) == pytest.approx(1.0)
    assert await provider.embed_batch(["My timezone is EST", "Weather in Austin"]) == [first, other]


def test_embedding_hash_covers_provider_model_and_text():
    key = build_embedding_hash("openai", "text-embedding-3-small", "hello")

    assert key == hashlib.sha256(b"openai:text-embedding-3-small:hello").hexdigest()[:16]
    assert key != build_embedding_hash("openai", "text-embedding-3-large", "hello")


def test_serialized_vectors_decode_back_and_garbage_is_rejected():
    vector = [0.1, -0.25, 1 / 3]

    assert deserialize_embedding(serialize_embedding(vector)) == vector
    assert deserialize_embedding(memoryview(serialize_embedding(vector))) == vector
    assert deserialize_embedding(b"{not json") is None
    assert deserialize_embedding(b'{"a": 1}') is None
    assert deserialize_embedding(b'[1, "x"]') is None
    assert deserialize_embedding(None) is None


@pytest.mark.asyncio
async def test_openai_cached_text_is_requested_once(store):
    client = _FakeClient()
    provider = _provider(store, client)

    first = await provider.embed_batch(["hello"])
    second = await provider.embed_batch(["hello"])

    assert len(client.calls) == 1
    assert first == second
    assert first[0] == pytest.approx([5 / math.sqrt(26), 1 / math.sqrt(26)])
    assert store.count_cached_embeddings() == 1


@pytest.mark.asyncio
async def test_openai_batch_requests_only_unique_misses_and_keeps_order(store):
    client = _FakeClient()
    provider = _provider(store, client)
    await provider.embed_batch(["a"])

    vectors = await provider.embed_batch(["bb", "a", "bb"])

    assert len(client.calls) == 2
    assert client.calls[1]["json"] == {"model": "text-embedding-3-small", "input": ["bb"]}
    assert client.calls[1]["headers"]["Authorization"] == "Bearer sk-test"
    assert client.calls[1]["url"] == EMBEDDINGS_URL
    assert vectors[0] == vectors[2]
    assert vectors[1] == pytest.approx([1 / math.sqrt(2), 1 / math.sqrt(2)])
    assert vectors[0] == pytest.approx([2 / math.sqrt(5), 1 / math.sqrt(5)])


@pytest.mark.asyncio
async def test_openai_error_status_surfaces_body_and_skips_cache(store):
    request = httpx.Request("POST", EMBEDDINGS_URL)
    client = _FakeClient([httpx.Response(400, text="invalid model name", request=request)])
    provider = _provider(store, client)

    with pytest.raises(EmbeddingAPIError) as excinfo:
        await provider.embed_batch(["hello"])

    assert "invalid model name" in str(excinfo.value)
    assert "400" in str(excinfo.value)
    assert excinfo.value.status_code == 400
    assert store.count_cached_embeddings() == 0


@pytest.mark.asyncio
async def test_openai_retries_transient_status(store):
    request = httpx.Request("POST", EMBEDDINGS_URL)
    client = _FakeClient([httpx.Response(503, text="overloaded", request=request)])
    provider = _provider(store, client, max_retries=1)

    vectors = await provider.embed_batch(["hello"])

    assert len(client.calls) == 2
    assert vectors[0] == pytest.approx([5 / math.sqrt(26), 1 / math.sqrt(26)])


@pytest.mark.asyncio
async def test_openai_gives_up_after_retry_budget_on_transient_status(store):
    request = httpx.Request("POST", EMBEDDINGS_URL)
    client = _FakeClient([httpx.Response(429, text="rate limited", request=request) for _ in range(3)])
    provider = _provider(store, client, max_retries=2)

    with pytest.raises(EmbeddingAPIError) as excinfo:
        await provider.embed_batch(["hello"])

    assert excinfo.value.status_code == 429
    assert "rate limited" in str(excinfo.value)
    assert len(client.calls) == 3
    assert provider.request_count == 3
    assert store.count_cached_embeddings() == 0


@pytest.mark.asyncio
async def test_openai_transport_failure_raises_after_retries(store):
    client = _FakeClient([httpx.ConnectError("boom"), httpx.ConnectError("boom again")])
    provider = _provider(store, client, max_retries=1)

    with pytest.raises(EmbeddingError):
        await provider.embed_batch(["hello"])

    assert len(client.calls) == 2
    assert store.count_cached_embeddings() == 0


@pytest.mark.asyncio
async def test_openai_mismatched_vector_count_is_an_error(store):
    request = httpx.Request("POST", EMBEDDINGS_URL)
    client = _FakeClient([httpx.Response(200, json={"data": [{"embedding": [1.0]}]}, request=request)])
    provider = _provider(store, client)

    with pytest.raises(EmbeddingError):
        await provider.embed_batch(["one", "two"])

    assert store.count_cached_embeddings() == 0


@pytest.mark.asyncio
async def test_openai_corrupt_cache_row_is_treated_as_miss(store):
    client = _FakeClient()
    provider = _provider(store, client)
    key = build_embedding_hash("openai", "text-embedding-3-small", "hello")
    conn = store._conn_or_raise()
    conn.execute(
        "INSERT INTO embedding_cache (content_hash, embedding, provider, model, updated_at) VALUES (?, ?, ?, ?, ?)",
        (key, b"{oops", "openai", "text-embedding-3-small", 0),
    )
    conn.commit()

    vectors = await provider.embed_batch(["hello"])

    assert len(client.calls) == 1
    assert vectors[0] == pytest.approx([5 / math.sqrt(26), 1 / math.sqrt(26)])
    assert store.get_cached_embeddings([key])[key] == pytest.approx(vectors[0])


@pytest.mark.asyncio
async def test_openai_truncates_oversized_input(store):
    client = _FakeClient()
    provider = _provider(store, client, max_input_chars=5)

    await provider.embed("hello world")

    assert client.calls[0]["json"]["input"] == ["hello"]


def test_openai_without_key_fails_before_any_request(store):
    with pytest.raises(ConfigurationError):
        _provider(store, _FakeClient(), api_key="  ")

    config = MemoryConfig(embedding_provider="openai", embedding_api_key="")
    with pytest.raises(ConfigurationError):
        create_embedding_provider(config, store)


def test_factory_returns_local_provider_by_default(store):
    provider = create_embedding_provider(MemoryConfig(), store)

    assert isinstance(provider, LocalHashEmbeddingProvider)

import asyncio
import json
import math

from conftest import FakeRedis

from supportrag.services.embedding import (
    DeterministicEmbeddingProvider,
    EmbeddingCache,
    EmbeddingProvider,
    EmbeddingService,
    EmbeddingTask,
    normalize_vector,
)

DIM = 8


class SlowProvider(EmbeddingProvider):
    name = "slow"

    async def embed(self, texts, task):
        await asyncio.sleep(5)
        return [[1.0] * self.dim for _ in texts]


class BrokenProvider(EmbeddingProvider):
    name = "broken"

    async def embed(self, texts, task):
        raise RuntimeError("quota exceeded")


class WideProvider(EmbeddingProvider):
    """Returns vectors larger than the configured dimension."""

    name = "wide"

    async def embed(self, texts, task):
        return [[0.5] * (self.dim * 2) for _ in texts]


def redis_cache(client=None):
    return EmbeddingCache(client=client or FakeRedis(), ttl_seconds=60)


class CountingProvider(EmbeddingProvider):
    name = "counting"
    batch_size = 2

    def __init__(self, model="counting-model", dim=DIM):
        super().__init__(model, dim)
        self.calls = []

    async def embed(self, texts, task):
        self.calls.append(list(texts))
        return [[float(len(t))] + [0.0] * (self.dim - 1) for t in texts]


def test_normalize_vector():
    assert normalize_vector([3.0, 4.0]) == [0.6, 0.8]
    assert normalize_vector([0.0, 0.0]) == [0.0, 0.0]


def test_deterministic_vectors_are_stable_and_unit_length():
    provider = DeterministicEmbeddingProvider(dim=DIM)
    first = provider.embed_one("Order #A1001 tracking issue")
    second = provider.embed_one("Order #A1001 tracking issue")

    assert first == second
    assert len(first) == DIM
    assert math.isclose(sum(v * v for v in first), 1.0, rel_tol=1e-9)
    assert provider.embed_one("something else") != first


def test_timeout_falls_back_to_deterministic_vectors():
    client = FakeRedis()
    service = EmbeddingService(
        SlowProvider("slow-model", DIM), cache=redis_cache(client), timeout_seconds=0.01
    )
    texts = ["first chunk", "second chunk"]

    vectors = asyncio.run(service.embed(texts))

    fallback = DeterministicEmbeddingProvider(dim=DIM)
    assert vectors == [fallback.embed_one(t) for t in texts]
    assert service.fallback_count == 2
    # Fallback vectors are not cached under the provider's model
    assert client.values == {}


def test_provider_error_falls_back():
    service = EmbeddingService(BrokenProvider("broken-model", DIM), cache=redis_cache())
    [vector] = asyncio.run(service.embed(["hello"], EmbeddingTask.RETRIEVAL_QUERY))
    assert vector == DeterministicEmbeddingProvider(dim=DIM).embed_one("hello")


def test_cache_avoids_repeat_provider_calls():
    provider = CountingProvider()
    service = EmbeddingService(provider, cache=redis_cache())

    asyncio.run(service.embed(["aa", "bbb"]))
    vectors = asyncio.run(service.embed(["bbb", "aa", "c"]))

    assert provider.calls == [["aa", "bbb"], ["c"]]
    assert [v[0] for v in vectors] == [3.0, 2.0, 1.0]


def test_results_keep_input_order_across_batches():
    provider = CountingProvider()
    service = EmbeddingService(provider, cache=redis_cache())
    texts = ["a", "bb", "ccc", "dddd", "eeeee"]

    vectors = asyncio.run(service.embed(texts))

    assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert len(provider.calls) == 3


def test_offline_service_skips_cache():
    client = FakeRedis(down=True)
    service = EmbeddingService(DeterministicEmbeddingProvider(dim=DIM), cache=redis_cache(client))

    [vector] = asyncio.run(service.embed(["x"]))

    assert vector == DeterministicEmbeddingProvider(dim=DIM).embed_one("x")
    assert client.values == {}


def test_cache_entries_are_shared_with_ttl():
    client = FakeRedis()
    key = EmbeddingCache.make_key("counting-model", "aa")
    asyncio.run(EmbeddingService(CountingProvider(), cache=redis_cache(client)).embed(["aa"]))

    # A second process with its own service sees the first one's entry
    other = CountingProvider()
    [vector] = asyncio.run(EmbeddingService(other, cache=redis_cache(client)).embed(["aa"]))

    assert other.calls == []
    assert vector[0] == 2.0
    assert key.startswith("rag-embed:")
    assert json.loads(client.values[key])[0] == 2.0
    assert client.ttls[key] == 60


def test_redis_outage_degrades_to_provider_calls():
    provider = CountingProvider()
    service = EmbeddingService(provider, cache=redis_cache(FakeRedis(down=True)))

    asyncio.run(service.embed(["aa"]))
    [vector] = asyncio.run(service.embed(["aa"]))

    assert provider.calls == [["aa"], ["aa"]]
    assert vector[0] == 2.0
    assert service.fallback_count == 0


def test_wrong_dimension_falls_back():
    client = FakeRedis()
    service = EmbeddingService(WideProvider("wide-model", DIM), cache=redis_cache(client))

    [vector] = asyncio.run(service.embed(["hello"]))

    assert len(vector) == DIM
    assert vector == DeterministicEmbeddingProvider(dim=DIM).embed_one("hello")
    assert service.fallback_count == 1
    assert client.values == {}

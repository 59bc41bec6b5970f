import asyncio

import pytest

from adaptive_rag.cache.semantic import SemanticCache
from adaptive_rag.config import CacheConfig
from adaptive_rag.types import RetrievedDocument


class AxisEmbedder:
    """Maps each known query onto a fixed vector."""

    def __init__(self, vectors: dict[str, list[float]]) -> None:
        self.vectors = vectors
        self.calls = 0

    def dimension(self) -> int:
        return 2

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        return self.vectors[text]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


VECTORS = {
    "refund policy": [1.0, 0.0],
    "refund policy please": [0.99, 0.05],
    "shipping times": [0.0, 1.0],
    "diagonal": [0.7, 0.7],
}


def _context() -> list[RetrievedDocument]:
    return [RetrievedDocument(id="doc-1", content="Refunds within 30 days.", metadata={}, score=0.9)]


async def test_lookup_hits_above_similarity_threshold() -> None:
    cache = SemanticCache(AxisEmbedder(VECTORS))
    await cache.insert("refund policy", "Refunds within 30 days [doc-1].", _context())

    hit = await cache.lookup("refund policy please")

    assert hit is not None
    assert hit.entry.answer == "Refunds within 30 days [doc-1]."
    assert hit.entry.context[0].id == "doc-1"
    assert hit.similarity >= 0.95


async def test_lookup_misses_below_threshold() -> None:
    cache = SemanticCache(AxisEmbedder(VECTORS))
    await cache.insert("refund policy", "answer", _context())

    assert await cache.lookup("diagonal") is None
    assert await cache.lookup("shipping times") is None
    assert cache.stats()["misses"] == 2


async def test_precomputed_embedding_is_reused() -> None:
    embedder = AxisEmbedder(VECTORS)
    cache = SemanticCache(embedder)
    vector = await cache.embed("refund policy")

    await cache.lookup("refund policy", vector)
    await cache.insert("refund policy", "answer", [], vector)

    assert embedder.calls == 1


async def test_lru_evicts_least_recently_used_entry() -> None:
    cache = SemanticCache(AxisEmbedder(VECTORS), CacheConfig(max_size=2))
    await cache.insert("refund policy", "refunds", [])
    await cache.insert("shipping times", "shipping", [])
    assert await cache.lookup("refund policy") is not None

    await cache.insert("diagonal", "diagonal", [])

    assert len(cache) == 2
    assert await cache.lookup("shipping times") is None
    hit = await cache.lookup("refund policy")
    assert hit is not None and hit.entry.answer == "refunds"


async def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = SemanticCache(AxisEmbedder(VECTORS), CacheConfig(ttl_seconds=60), clock=clock)
    await cache.insert("refund policy", "refunds", [])

    clock.now += 30
    assert await cache.lookup("refund policy") is not None

    clock.now += 61
    assert await cache.lookup("refund policy") is None
    assert len(cache) == 0


async def test_clear_and_stats() -> None:
    cache = SemanticCache(AxisEmbedder(VECTORS))
    await cache.insert("refund policy", "refunds", [])
    await cache.lookup("refund policy")

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["hit_rate"] == pytest.approx(1.0)
    assert cache.clear() == 1
    assert len(cache) == 0


class OneHotEmbedder:
    """Yields to the event loop before answering so concurrent calls interleave."""

    def dimension(self) -> int:
        return 8

    async def embed(self, text: str) -> list[float]:
        await asyncio.sleep(0)
        vector = [0.0] * 8
        vector[int(text.rsplit("-", 1)[1])] = 1.0
        return vector


async def test_concurrent_inserts_respect_capacity() -> None:
    cache = SemanticCache(OneHotEmbedder(), CacheConfig(max_size=4))
    queries = [f"query-{idx}" for idx in range(8)]

    await asyncio.gather(*(cache.insert(query, query, []) for query in queries))
    hits = await asyncio.gather(*(cache.lookup(query) for query in queries))

    assert len(cache) == 4
    found = {query: hit.entry.answer for query, hit in zip(queries, hits) if hit is not None}
    assert len(found) == 4
    assert all(answer == query for query, answer in found.items())
    stats = cache.stats()
    assert stats["hits"] == 4
    assert stats["misses"] == 4


async def test_concurrent_inserts_below_capacity_keep_every_entry() -> None:
    cache = SemanticCache(OneHotEmbedder(), CacheConfig(max_size=10))
    queries = [f"query-{idx}" for idx in range(8)]

    await asyncio.gather(*(cache.insert(query, query, []) for query in queries))
    hits = await asyncio.gather(*(cache.lookup(query) for query in queries))

    assert len(cache) == 8
    assert [hit.entry.answer if hit else None for hit in hits] == queries
    assert cache.stats()["hit_rate"] == pytest.approx(1.0)

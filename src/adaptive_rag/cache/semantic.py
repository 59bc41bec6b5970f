"""Embedding-keyed response cache."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from adaptive_rag.config import CacheConfig
from adaptive_rag.providers.base import EmbeddingProvider
from adaptive_rag.providers.vector_store import cosine_similarity
from adaptive_rag.types import RetrievedDocument, SemanticCacheEntry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheHit:
    entry: SemanticCacheEntry
    similarity: float


class SemanticCache:
    """Bounded LRU of answers keyed by query embedding.

    A lookup hits when the best cosine similarity against stored query
    embeddings reaches `similarity_threshold`. Embedding happens outside the
    lock; the scan, LRU bookkeeping and inserts happen under it.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.embedder = embedder
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: OrderedDict[int, SemanticCacheEntry] = OrderedDict()
        self._next_key = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def embed(self, query: str) -> list[float]:
        return await self.embedder.embed(query)

    async def lookup(self, query: str, embedding: list[float] | None = None) -> CacheHit | None:
        vector = embedding if embedding is not None else await self.embed(query)
        with self._lock:
            self._evict_expired()
            best_key: int | None = None
            best_similarity = -1.0
            for key, entry in self._entries.items():
                similarity = cosine_similarity(vector, entry.query_embedding)
                if similarity > best_similarity:
                    best_key, best_similarity = key, similarity

            if best_key is None or best_similarity < self.config.similarity_threshold:
                self._misses += 1
                return None

            self._entries.move_to_end(best_key)
            self._hits += 1
            entry = self._entries[best_key]
        logger.debug("semantic cache hit for %r (similarity %.3f)", query, best_similarity)
        return CacheHit(entry=entry, similarity=best_similarity)

    async def insert(
        self,
        query: str,
        answer: str,
        context: list[RetrievedDocument],
        embedding: list[float] | None = None,
    ) -> SemanticCacheEntry:
        vector = embedding if embedding is not None else await self.embed(query)
        entry = SemanticCacheEntry(
            query_embedding=list(vector),
            query=query,
            answer=answer,
            context=list(context),
            created_at=self._clock(),
        )
        with self._lock:
            self._entries[self._next_key] = entry
            self._next_key += 1
            while len(self._entries) > self.config.max_size:
                self._entries.popitem(last=False)
        return entry

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            return removed

    def stats(self) -> dict[str, float | int]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self.config.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
                "similarity_threshold": self.config.similarity_threshold,
            }

    def _evict_expired(self) -> None:
        ttl = self.config.ttl_seconds
        if ttl is None:
            return
        cutoff = self._clock() - ttl
        expired = [key for key, entry in self._entries.items() if entry.created_at < cutoff]
        for key in expired:
            del self._entries[key]

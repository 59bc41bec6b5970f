"""In-process reference vector store."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from math import sqrt
from typing import Any

from adaptive_rag.errors import DimensionMismatchError
from adaptive_rag.providers.base import EmbeddingProvider


@dataclass(slots=True)
class _StoredVector:
    doc_id: str
    content: str
    metadata: dict[str, Any]
    embedding: list[float]


class InMemoryVectorStore:
    """Deterministic vector store used for tests, offline mode and local prototyping."""

    def __init__(self, dimension: int) -> None:
        self.dimension = dimension
        self._store: dict[str, _StoredVector] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._store)

    async def upsert(
        self,
        doc_id: str,
        content: str,
        embedding: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if len(embedding) != self.dimension:
            raise DimensionMismatchError(self.dimension, [len(embedding)])
        with self._lock:
            self._store[doc_id] = _StoredVector(
                doc_id=doc_id,
                content=content,
                metadata=dict(metadata or {}),
                embedding=list(embedding),
            )

    async def add_texts(
        self,
        embedder: EmbeddingProvider,
        items: list[tuple[str, str, dict[str, Any]]],
    ) -> list[str]:
        """Embed and upsert `(doc_id, content, metadata)` items."""
        for doc_id, content, metadata in items:
            await self.upsert(doc_id, content, await embedder.embed(content), metadata)
        return [doc_id for doc_id, _, _ in items]

    async def delete(self, doc_id: str) -> bool:
        with self._lock:
            return self._store.pop(doc_id, None) is not None

    async def search(
        self, vector: list[float], top_k: int, threshold: float
    ) -> list[dict[str, Any]]:
        if len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, [len(vector)])
        with self._lock:
            records = list(self._store.values())

        scored = [
            (cosine_similarity(vector, record.embedding), record) for record in records
        ]
        ranked = sorted(
            (item for item in scored if item[0] >= threshold),
            key=lambda item: item[0],
            reverse=True,
        )
        return [
            {
                "id": record.doc_id,
                "content": record.content,
                "metadata": dict(record.metadata),
                "score": score,
            }
            for score, record in ranked[:top_k]
        ]

    async def stats(self) -> dict[str, Any]:
        return {"vector_dimension": self.dimension, "document_count": len(self._store)}


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)

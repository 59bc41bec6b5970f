"""Deterministic embedding provider that needs no external model."""

from __future__ import annotations

from hashlib import blake2b
from math import sqrt

from adaptive_rag.text import tokenize


class HashingEmbedder:
    """Feature-hashing embedder over Latin words and single CJK characters.

    Used for offline mode and deterministic tests. Identical texts map to
    identical vectors, and texts sharing many terms have high cosine similarity.
    """

    def __init__(self, dimension: int = 256) -> None:
        if dimension < 8:
            raise ValueError("dimension must be at least 8")
        self._dimension = dimension

    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self._dimension)]
        terms = tokenize(text)
        if not terms:
            return vector

        for term in terms:
            digest = blake2b(term.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self._dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]

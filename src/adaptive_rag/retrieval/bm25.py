"""BM25 scoring over a small candidate pool, built on `rank_bm25`."""

from __future__ import annotations

from math import log

from rank_bm25 import BM25Okapi

from adaptive_rag.text import tokenize


class _SmoothedBM25(BM25Okapi):
    """Okapi BM25 with the non-negative `ln((N - df + 0.5) / (df + 0.5) + 1)` IDF."""

    def _calc_idf(self, nd: dict[str, int]) -> None:
        for term, df in nd.items():
            self.idf[term] = log((self.corpus_size - df + 0.5) / (df + 0.5) + 1.0)


class BM25Index:
    """Okapi BM25 over a fixed list of documents.

    The index is built per call from the dense candidates, so IDF reflects the
    candidate pool rather than the whole corpus.
    """

    def __init__(self, documents: list[str], *, k1: float = 1.5, b: float = 0.75) -> None:
        corpus = [tokenize(text) for text in documents]
        self._size = len(corpus)
        self._bm25: _SmoothedBM25 | None = None
        if any(corpus):
            self._bm25 = _SmoothedBM25(corpus, k1=k1, b=b)

    def __len__(self) -> int:
        return self._size

    def idf(self, term: str) -> float:
        if self._bm25 is None:
            return 0.0
        return float(self._bm25.idf.get(term, 0.0))

    def scores(self, query: str) -> list[float]:
        terms = tokenize(query)
        if self._bm25 is None or not terms:
            return [0.0] * self._size
        return [float(score) for score in self._bm25.get_scores(terms)]

    def rank(self, query: str, limit: int | None = None) -> list[tuple[int, float]]:
        """Return `(document index, score)` pairs with a positive score, best first."""
        ranked = sorted(
            ((idx, score) for idx, score in enumerate(self.scores(query)) if score > 0.0),
            key=lambda item: item[1],
            reverse=True,
        )
        return ranked if limit is None else ranked[:limit]

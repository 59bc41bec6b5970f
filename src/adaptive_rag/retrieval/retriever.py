"""Hybrid dense + lexical retriever with embedding-dimension detection."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Sequence

from adaptive_rag.config import RetrievalConfig
from adaptive_rag.errors import DimensionMismatchError
from adaptive_rag.obs.tracing import Timer
from adaptive_rag.providers.base import EmbeddingProvider, VectorStore
from adaptive_rag.retrieval.bm25 import BM25Index
from adaptive_rag.retrieval.fusion import FusionLayer, Reranker
from adaptive_rag.types import HybridRetrievalResult, RetrievalStats, RetrievedDocument

logger = logging.getLogger(__name__)


class HybridRetriever:
    """Dense vector search, BM25 over the dense candidates, RRF fusion, optional rerank.

    The dense leg oversamples (`top_k * candidate_multiplier`) so the lexical
    leg and the fusion step have a pool to reorder before truncating to `top_k`.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        *,
        alternate_embedders: Sequence[EmbeddingProvider] = (),
        fusion_layer: FusionLayer | None = None,
        reranker: Reranker | None = None,
        config: RetrievalConfig | None = None,
        candidate_multiplier: int = 2,
    ) -> None:
        self.vector_store = vector_store
        self.embedder = embedder
        self.alternate_embedders = list(alternate_embedders)
        self.config = config or RetrievalConfig()
        self.fusion_layer = fusion_layer or FusionLayer(self.config)
        self.reranker = reranker
        self.candidate_multiplier = max(1, candidate_multiplier)

    async def resolve_embedder(self) -> tuple[EmbeddingProvider, int | None]:
        """Pick the embedder whose dimension matches the store's configured dimension.

        Raises:
            DimensionMismatchError: when neither the configured embedder nor any
                alternate produces vectors of the store's dimension.
        """

        stats = await self.vector_store.stats()
        expected = stats.get("vector_dimension")
        if expected is None:
            return self.embedder, None

        expected = int(expected)
        candidates = [self.embedder, *self.alternate_embedders]
        for candidate in candidates:
            if candidate.dimension() == expected:
                if candidate is not self.embedder:
                    logger.warning(
                        "configured embedder has dimension %d but store expects %d; "
                        "using alternate embedder %s",
                        self.embedder.dimension(),
                        expected,
                        type(candidate).__name__,
                    )
                return candidate, expected
        raise DimensionMismatchError(expected, [item.dimension() for item in candidates])

    async def retrieve(
        self,
        query: str,
        *,
        top_k: int,
        similarity_threshold: float,
        enable_bm25: bool = True,
        enable_rerank: bool = False,
        rerank_top_k: int = 3,
    ) -> HybridRetrievalResult:
        stats = RetrievalStats()
        with Timer() as total_timer:
            with Timer() as dense_timer:
                embedder, dimension = await self.resolve_embedder()
                vector = await embedder.embed(query)
                if dimension is not None and len(vector) != dimension:
                    raise DimensionMismatchError(dimension, [len(vector)])
                hits = await self.vector_store.search(
                    vector, top_k * self.candidate_multiplier, similarity_threshold
                )
            stats.embedding_dimension = dimension if dimension is not None else len(vector)
            stats.dense_ms = dense_timer.elapsed_ms
            dense = [_to_document(hit) for hit in hits]
            stats.dense_count = len(dense)

            if not dense:
                logger.debug("dense leg returned no candidates for %r", query)
                return HybridRetrievalResult(documents=[], status="skipped", stats=stats)

            sparse: list[RetrievedDocument] = []
            if enable_bm25:
                with Timer() as sparse_timer:
                    sparse = self._sparse_leg(query, dense)
                stats.sparse_ms = sparse_timer.elapsed_ms
                stats.sparse_count = len(sparse)

            with Timer() as fusion_timer:
                fused = self.fusion_layer.fuse(dense, sparse, top_k=top_k)
            stats.fusion_ms = fusion_timer.elapsed_ms
            stats.fused_count = len(fused)

            documents = fused
            if enable_rerank and self.reranker is not None:
                with Timer() as rerank_timer:
                    documents = await self.reranker.rerank(query, fused, rerank_top_k)
                stats.rerank_ms = rerank_timer.elapsed_ms
                stats.reranked_count = len(documents)
            elif enable_rerank:
                logger.debug("rerank requested but no judge model is configured")

        stats.total_ms = total_timer.elapsed_ms
        return HybridRetrievalResult(
            documents=documents,
            status="completed",
            dense=dense,
            sparse=sparse,
            fused=fused,
            stats=stats,
        )

    def _sparse_leg(
        self, query: str, candidates: list[RetrievedDocument]
    ) -> list[RetrievedDocument]:
        index = BM25Index(
            [doc.content for doc in candidates],
            k1=self.config.bm25_k1,
            b=self.config.bm25_b,
        )
        return [
            replace(candidates[idx], score=score, source="sparse")
            for idx, score in index.rank(query)
        ]


def _to_document(hit: dict[str, Any]) -> RetrievedDocument:
    score = float(hit.get("score", 0.0))
    return RetrievedDocument(
        id=str(hit["id"]),
        content=str(hit.get("content", "")),
        metadata=dict(hit.get("metadata") or {}),
        score=score,
        source="dense",
        similarity=score,
    )

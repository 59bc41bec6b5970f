from math import log
from typing import Any

import pytest

from adaptive_rag.config import RetrievalConfig
from adaptive_rag.errors import CredentialsError, DimensionMismatchError
from adaptive_rag.providers.hashing import HashingEmbedder
from adaptive_rag.providers.vector_store import InMemoryVectorStore
from adaptive_rag.retrieval.bm25 import BM25Index
from adaptive_rag.retrieval.fusion import FusionLayer, JudgeReranker
from adaptive_rag.retrieval.retriever import HybridRetriever
from adaptive_rag.types import RetrievedDocument


def _doc(doc_id: str, score: float = 0.5, content: str = "") -> RetrievedDocument:
    return RetrievedDocument(
        id=doc_id, content=content or f"content of {doc_id}", metadata={}, score=score, similarity=score
    )


def test_bm25_ranks_documents_containing_rare_terms_first() -> None:
    index = BM25Index(
        [
            "vector databases store embeddings",
            "bm25 scores lexical overlap between query and document",
            "the cafeteria opens at noon",
        ]
    )

    ranked = index.rank("how does bm25 score lexical matches")

    assert ranked[0][0] == 1
    assert all(score > 0 for _, score in ranked)
    assert 2 not in [idx for idx, _ in ranked]


def test_bm25_idf_uses_smoothed_formula() -> None:
    index = BM25Index(["alpha beta", "alpha gamma"])

    assert index.idf("beta") == pytest.approx(log((2 - 1 + 0.5) / (1 + 0.5) + 1))
    assert index.idf("alpha") == pytest.approx(log((2 - 2 + 0.5) / (2 + 0.5) + 1))
    assert index.idf("missing") == 0.0


def test_bm25_tokenizes_cjk_per_character() -> None:
    index = BM25Index(["数据加密策略", "午餐时间"])

    ranked = index.rank("加密")

    assert [idx for idx, _ in ranked] == [0]


def test_bm25_scores_follow_okapi_term_weighting() -> None:
    index = BM25Index(["alpha beta", "alpha gamma gamma", ""], k1=1.2, b=0.0)

    scores = index.scores("beta")
    expected = log((3 - 1 + 0.5) / (1 + 0.5) + 1) * (1 * 2.2) / (1 + 1.2)

    assert len(index) == 3
    assert scores[0] == pytest.approx(expected)
    assert scores[1:] == [0.0, 0.0]


def test_bm25_handles_documents_without_terms() -> None:
    index = BM25Index(["", "..."])

    assert index.rank("alpha") == []
    assert index.idf("alpha") == 0.0
    assert BM25Index([]).rank("alpha") == []


def test_fusion_merges_legs_and_tags_hybrid_documents() -> None:
    layer = FusionLayer(RetrievalConfig())

    fused = layer.fuse([_doc("a"), _doc("b")], [_doc("b"), _doc("c")], top_k=5)

    assert [doc.id for doc in fused] == ["b", "a", "c"]
    assert [doc.source for doc in fused] == ["hybrid", "dense", "sparse"]
    assert fused[0].score == pytest.approx(0.6 / 62 + 0.4 / 61)
    assert fused[1].score == pytest.approx(0.6 / 61)


def test_fusion_counts_duplicate_ids_once_per_leg() -> None:
    layer = FusionLayer()

    fused = layer.fuse([_doc("a"), _doc("a"), _doc("b")], [], top_k=5)

    assert [doc.id for doc in fused] == ["a", "b"]
    assert fused[0].score == pytest.approx(0.6 / 61)
    assert fused[1].score == pytest.approx(0.6 / 62)


def test_fusion_is_deterministic_and_truncates() -> None:
    layer = FusionLayer()
    dense = [_doc(f"d{i}") for i in range(6)]
    sparse = [_doc(f"d{i}") for i in reversed(range(6))]

    first = layer.fuse(dense, sparse, top_k=3)
    second = layer.fuse(dense, sparse, top_k=3)

    assert [(doc.id, doc.score) for doc in first] == [(doc.id, doc.score) for doc in second]
    assert len(first) == 3


class _ContentJudge:
    async def complete(self, prompt: str, temperature: float = 0.0) -> str:
        if "alpha" in prompt:
            return '{"relevance_score": 0.9}'
        if "beta" in prompt:
            return "I cannot rate this."
        return '{"relevance_score": 0.1}'

    async def stream(self, prompt: str, temperature: float = 0.0) -> Any:
        raise NotImplementedError


async def test_judge_reranker_falls_back_to_fused_score_per_document() -> None:
    reranker = JudgeReranker(_ContentJudge())
    candidates = [
        _doc("gamma-doc", score=0.3, content="gamma text"),
        _doc("beta-doc", score=0.5, content="beta text"),
        _doc("alpha-doc", score=0.2, content="alpha text"),
    ]

    ranked = await reranker.rerank("query", candidates, top_k=2)

    assert [doc.id for doc in ranked] == ["alpha-doc", "beta-doc"]
    assert ranked[0].rerank_score == pytest.approx(0.9)
    assert ranked[1].rerank_score == pytest.approx(0.5)


async def test_judge_reranker_limits_candidate_pool() -> None:
    reranker = JudgeReranker(_ContentJudge(), RetrievalConfig(rerank_candidate_limit=2))
    candidates = [_doc("x", content="alpha"), _doc("y", content="gamma"), _doc("z", content="alpha")]

    ranked = await reranker.rerank("query", candidates, top_k=5)

    assert [doc.id for doc in ranked] == ["x", "y"]


class _RejectingJudge:
    async def complete(self, prompt: str, temperature: float = 0.0) -> str:
        raise CredentialsError("completion rejected the provider credentials")

    async def stream(self, prompt: str, temperature: float = 0.0) -> Any:
        raise NotImplementedError


async def test_judge_reranker_does_not_mask_rejected_credentials() -> None:
    reranker = JudgeReranker(_RejectingJudge())

    with pytest.raises(CredentialsError):
        await reranker.rerank("query", [_doc("x")], top_k=1)


async def test_hybrid_retriever_returns_fused_documents() -> None:
    embedder = HashingEmbedder(dimension=64)
    store = InMemoryVectorStore(dimension=64)
    await store.add_texts(
        embedder,
        [
            ("policy", "employees must encrypt customer data at rest", {}),
            ("menu", "pasta salad soup bread", {}),
        ],
    )
    retriever = HybridRetriever(store, embedder)

    result = await retriever.retrieve(
        "employees must encrypt customer data at rest", top_k=1, similarity_threshold=0.9
    )

    assert result.status == "completed"
    assert [doc.id for doc in result.documents] == ["policy"]
    assert result.documents[0].source == "hybrid"
    assert result.documents[0].similarity == pytest.approx(1.0)
    assert result.stats.dense_count == 1
    assert result.stats.embedding_dimension == 64


async def test_hybrid_retriever_skips_when_dense_leg_is_empty() -> None:
    embedder = HashingEmbedder(dimension=32)
    retriever = HybridRetriever(InMemoryVectorStore(dimension=32), embedder)

    result = await retriever.retrieve("anything", top_k=3, similarity_threshold=0.3)

    assert result.status == "skipped"
    assert result.documents == []


async def test_hybrid_retriever_without_bm25_uses_dense_ranking() -> None:
    embedder = HashingEmbedder(dimension=64)
    store = InMemoryVectorStore(dimension=64)
    await store.add_texts(embedder, [("only", "encrypt customer data", {})])
    retriever = HybridRetriever(store, embedder)

    result = await retriever.retrieve(
        "encrypt customer data", top_k=3, similarity_threshold=0.1, enable_bm25=False
    )

    assert result.sparse == []
    assert [doc.source for doc in result.documents] == ["dense"]


async def test_resolve_embedder_raises_when_no_dimension_matches() -> None:
    retriever = HybridRetriever(
        InMemoryVectorStore(dimension=128),
        HashingEmbedder(dimension=64),
        alternate_embedders=[HashingEmbedder(dimension=32)],
    )

    with pytest.raises(DimensionMismatchError) as exc_info:
        await retriever.resolve_embedder()

    assert exc_info.value.expected == 128
    assert exc_info.value.available == [64, 32]

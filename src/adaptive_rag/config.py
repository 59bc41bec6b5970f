"""Configuration models for the adaptive RAG engine."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

WindowStrategy = Literal["sliding_window", "token_limit", "hybrid"]


class RetrievalConfig(BaseModel):
    """Configures hybrid retrieval, rank fusion and judge reranking."""

    rrf_k: int = Field(default=60, ge=1)
    dense_weight: float = Field(default=0.6, ge=0.0)
    sparse_weight: float = Field(default=0.4, ge=0.0)
    bm25_k1: float = Field(default=1.5, gt=0.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    rerank_candidate_limit: int = Field(default=20, ge=1)
    rerank_content_chars: int = Field(default=1000, ge=50)


class GradingConfig(BaseModel):
    """Configures evidence grading and retrieval-retry rewrites."""

    max_graded_documents: int = Field(default=10, ge=1)
    document_preview_chars: int = Field(default=500, ge=50)
    max_rewrite_length_ratio: float = Field(default=3.0, gt=1.0)


class CacheConfig(BaseModel):
    """Configures the semantic response cache."""

    enabled: bool = True
    similarity_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    max_size: int = Field(default=100, ge=1)
    ttl_seconds: float | None = Field(default=None, gt=0.0)


class WindowConfig(BaseModel):
    """Configures conversation trimming, compression and follow-up rewrites."""

    strategy: WindowStrategy = "hybrid"
    max_rounds: int = Field(default=10, ge=1)
    max_tokens: int = Field(default=4000, ge=50)
    preserve_system_prompt: bool = True
    keep_recent_messages: int = Field(default=4, ge=2)
    min_messages_to_compress: int = Field(default=4, ge=1)
    compress_after_messages: int = Field(default=0, ge=0)
    enable_follow_up_rewrite: bool = True
    follow_up_history_messages: int = Field(default=6, ge=1)


class VerificationConfig(BaseModel):
    """Configures asynchronous post-hoc answer verification."""

    enabled: bool = True
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    min_overlap: float = Field(default=0.35, ge=0.0, le=1.0)
    context_chars: int = Field(default=4000, ge=200)


class EngineConfig(BaseModel):
    """Top-level engine configuration."""

    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    grading: GradingConfig = Field(default_factory=GradingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    recursion_limit: int = Field(default=25, ge=4)
    judge_temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    rewrite_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_context_documents: int = Field(default=5, ge=1)
    context_document_chars: int = Field(default=2000, ge=100)


class QueryOptions(BaseModel):
    """Per-turn options accepted by `RagEngine.query` and `RagEngine.stream_query`."""

    top_k: int = Field(default=5, ge=1, le=50)
    similarity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_retries: int = Field(default=1, ge=0)
    grade_pass_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    skip_semantic_cache: bool = False
    cache_result: bool = True
    enable_bm25: bool = True
    enable_rerank: bool = False
    rerank_top_k: int = Field(default=3, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

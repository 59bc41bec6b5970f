"""Rank fusion and judge reranking for hybrid retrieval results."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace

from adaptive_rag.config import RetrievalConfig
from adaptive_rag.errors import ConfigurationError
from adaptive_rag.prompts import RERANK_PROMPT
from adaptive_rag.providers.base import CompletionProvider
from adaptive_rag.text import coerce_unit_score, parse_json_object
from adaptive_rag.types import RetrievedDocument

logger = logging.getLogger(__name__)


class Reranker(ABC):
    """Reranker interface applied after rank fusion."""

    @abstractmethod
    async def rerank(
        self, query: str, candidates: list[RetrievedDocument], top_k: int
    ) -> list[RetrievedDocument]:
        """Return at most `top_k` candidates in the final ranking order."""


class JudgeReranker(Reranker):
    """Scores each candidate with a judge model and sorts by that score.

    A candidate whose score cannot be obtained keeps its fused score, so a
    flaky judge degrades the ranking instead of dropping evidence.
    """

    def __init__(
        self,
        completion: CompletionProvider,
        config: RetrievalConfig | None = None,
        *,
        temperature: float = 0.0,
    ) -> None:
        self.completion = completion
        self.config = config or RetrievalConfig()
        self.temperature = temperature

    async def rerank(
        self, query: str, candidates: list[RetrievedDocument], top_k: int
    ) -> list[RetrievedDocument]:
        pool = candidates[: self.config.rerank_candidate_limit]
        if not pool:
            return []
        scores = await asyncio.gather(*(self._score(query, doc) for doc in pool))
        rescored = [replace(doc, rerank_score=score) for doc, score in zip(pool, scores, strict=True)]
        rescored.sort(key=lambda doc: doc.rerank_score or 0.0, reverse=True)
        return rescored[:top_k]

    async def _score(self, query: str, document: RetrievedDocument) -> float:
        prompt = RERANK_PROMPT.format(
            query=query,
            document=document.content[: self.config.rerank_content_chars],
        )
        try:
            raw = await self.completion.complete(prompt, self.temperature)
            return coerce_unit_score(parse_json_object(raw).get("relevance_score"))
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.debug("rerank scoring failed for %s, keeping fused score: %s", document.id, exc)
            return document.score


class FusionLayer:
    """Weighted Reciprocal Rank Fusion of the dense and sparse legs."""

    def __init__(self, config: RetrievalConfig | None = None) -> None:
        self.config = config or RetrievalConfig()

    def fuse(
        self,
        dense: list[RetrievedDocument],
        sparse: list[RetrievedDocument],
        *,
        top_k: int,
    ) -> list[RetrievedDocument]:
        """Fuse two ranked legs into one list.

        Each document accumulates `weight / (rrf_k + rank + 1)` (0-based rank) for
        every leg it appears in. Duplicate ids are merged: the first occurrence in a
        leg sets that leg's rank, and a document found by both legs is tagged
        `hybrid`. Ties keep dense-first insertion order.
        """

        legs = (
            ("dense", dense, self.config.dense_weight),
            ("sparse", sparse, self.config.sparse_weight),
        )
        scores: dict[str, float] = {}
        documents: dict[str, RetrievedDocument] = {}
        found_by: dict[str, set[str]] = {}

        for leg_name, items, weight in legs:
            for rank, doc in enumerate(_dedupe(items)):
                scores[doc.id] = scores.get(doc.id, 0.0) + weight / (self.config.rrf_k + rank + 1)
                found_by.setdefault(doc.id, set()).add(leg_name)
                if doc.id not in documents:
                    documents[doc.id] = doc
                elif documents[doc.id].similarity is None and doc.similarity is not None:
                    documents[doc.id] = replace(documents[doc.id], similarity=doc.similarity)

        fused = [
            replace(
                documents[doc_id],
                score=score,
                source="hybrid" if len(found_by[doc_id]) > 1 else next(iter(found_by[doc_id])),
            )
            for doc_id, score in scores.items()
        ]
        fused.sort(key=lambda doc: doc.score, reverse=True)
        return fused[:top_k]


def _dedupe(items: list[RetrievedDocument]) -> list[RetrievedDocument]:
    seen: set[str] = set()
    unique: list[RetrievedDocument] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique

"""Evidence grading and the retrieval-retry decision."""

from __future__ import annotations

import logging

from adaptive_rag.config import GradingConfig
from adaptive_rag.errors import MalformedOutputError
from adaptive_rag.prompts import GRADING_PROMPT
from adaptive_rag.providers.base import CompletionProvider
from adaptive_rag.text import coerce_unit_score, extract_keywords, parse_json_object, truncate
from adaptive_rag.types import DocumentGrade, RetrievalGrade, RetrievedDocument

logger = logging.getLogger(__name__)

# A turn rewrites its query at most this many times, whatever `max_retries` says.
MAX_REWRITES = 1


def retry_budget(max_retries: int) -> int:
    return max(0, min(max_retries, MAX_REWRITES))


def should_rewrite(is_relevant: bool, retry_count: int, max_retries: int) -> bool:
    return not is_relevant and retry_count < retry_budget(max_retries)


class RetrievalGrader:
    """Turns an evidence set into one pass/fail relevance verdict.

    With a judge model the top documents are summarized into a grading prompt;
    unparseable judge output, or no judge at all, falls back to the mean raw
    similarity of the documents.
    """

    def __init__(
        self,
        completion: CompletionProvider | None = None,
        config: GradingConfig | None = None,
        *,
        temperature: float = 0.0,
    ) -> None:
        self.completion = completion
        self.config = config or GradingConfig()
        self.temperature = temperature

    async def grade(
        self,
        query: str,
        documents: list[RetrievedDocument],
        *,
        pass_threshold: float,
        retry_count: int = 0,
        max_retries: int = 1,
    ) -> RetrievalGrade:
        if not documents:
            return self._verdict(
                score=0.0,
                reasoning="No documents were retrieved.",
                method="empty",
                document_grades=[],
                pass_threshold=pass_threshold,
                retry_count=retry_count,
                max_retries=max_retries,
            )

        document_grades = document_keyword_grades(query, documents)
        completion = self.completion
        if completion is None:
            score, reasoning, method = self._similarity_fallback(documents, "no judge model")
        else:
            try:
                score, reasoning = await self._judge(completion, query, documents)
                method = "judge"
            except MalformedOutputError as exc:
                logger.info("grading output unparseable, using similarity mean: %s", exc)
                score, reasoning, method = self._similarity_fallback(documents, "unparseable judge output")

        return self._verdict(
            score=score,
            reasoning=reasoning,
            method=method,
            document_grades=document_grades,
            pass_threshold=pass_threshold,
            retry_count=retry_count,
            max_retries=max_retries,
        )

    def fallback_grade(
        self,
        documents: list[RetrievedDocument],
        *,
        pass_threshold: float,
        retry_count: int = 0,
        max_retries: int = 1,
        reason: str = "judge unavailable",
    ) -> RetrievalGrade:
        """Similarity-mean verdict used when the judge call itself fails."""
        if not documents:
            score, reasoning, method = 0.0, "No documents were retrieved.", "empty"
        else:
            score, reasoning, method = self._similarity_fallback(documents, reason)
        return self._verdict(
            score=score,
            reasoning=reasoning,
            method=method,
            document_grades=[],
            pass_threshold=pass_threshold,
            retry_count=retry_count,
            max_retries=max_retries,
        )

    async def _judge(
        self, completion: CompletionProvider, query: str, documents: list[RetrievedDocument]
    ) -> tuple[float, str]:
        summary = "\n\n".join(
            f"[{idx}] (id: {doc.id})\n{truncate(doc.content, self.config.document_preview_chars)}"
            for idx, doc in enumerate(documents[: self.config.max_graded_documents], start=1)
        )
        raw = await completion.complete(
            GRADING_PROMPT.format(query=query, documents=summary), self.temperature
        )
        payload = parse_json_object(raw)
        score = coerce_unit_score(payload.get("score"))
        return score, str(payload.get("reasoning", "")).strip()

    @staticmethod
    def _similarity_fallback(
        documents: list[RetrievedDocument], reason: str
    ) -> tuple[float, str, str]:
        values = [doc.similarity if doc.similarity is not None else doc.score for doc in documents]
        mean = sum(values) / len(values)
        score = min(1.0, max(0.0, mean))
        return score, f"Mean similarity {score:.3f} ({reason}).", "similarity_fallback"

    @staticmethod
    def _verdict(
        *,
        score: float,
        reasoning: str,
        method: str,
        document_grades: list[DocumentGrade],
        pass_threshold: float,
        retry_count: int,
        max_retries: int,
    ) -> RetrievalGrade:
        is_relevant = method != "empty" and score >= pass_threshold
        return RetrievalGrade(
            is_relevant=is_relevant,
            score=score,
            reasoning=reasoning,
            document_grades=document_grades,
            method=method,
            should_rewrite=should_rewrite(is_relevant, retry_count, max_retries),
        )


def document_keyword_grades(
    query: str, documents: list[RetrievedDocument]
) -> list[DocumentGrade]:
    """Per-document share of query keywords found in the document text."""
    keywords = extract_keywords(query)
    grades: list[DocumentGrade] = []
    for doc in documents:
        if not keywords:
            grades.append(DocumentGrade(document_id=doc.id, score=0.0, reasoning="no keywords"))
            continue
        content = doc.content.lower()
        matched = [keyword for keyword in keywords if keyword in content]
        grades.append(
            DocumentGrade(
                document_id=doc.id,
                score=len(matched) / len(keywords),
                reasoning=f"matched {len(matched)}/{len(keywords)} keywords",
            )
        )
    return grades

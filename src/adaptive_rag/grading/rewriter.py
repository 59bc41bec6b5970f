"""Query reformulation for the retrieval-retry cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from adaptive_rag.config import GradingConfig
from adaptive_rag.prompts import RETRY_REWRITE_PROMPT
from adaptive_rag.providers.base import CompletionProvider
from adaptive_rag.text import keeps_anchor, strip_reasoning

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RewriteResult:
    query: str
    accepted: bool
    reason: str


def clean_model_query(raw: str) -> str:
    """First non-empty line of a model reply, without quotes or a leading label."""
    text = strip_reasoning(raw)
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        for label in ("rewritten query:", "rewritten question:", "query:", "改写后:", "改写后："):
            if line.lower().startswith(label):
                line = line[len(label):]
                break
        return line.strip().strip("\"'“”`").strip()
    return ""


def rejection_reason(original: str, candidate: str, max_length_ratio: float = 3.0) -> str | None:
    """Why `candidate` is not an acceptable rewrite of `original`, or None if it is."""
    if not candidate:
        return "empty rewrite"
    if len(candidate) > len(original) * max_length_ratio:
        return "rewrite too long"
    if not keeps_anchor(original, candidate):
        return "rewrite dropped every keyword of the original query"
    return None


class QueryRewriter:
    """Asks a fast model for a better search query using the grader's feedback."""

    def __init__(
        self,
        completion: CompletionProvider,
        config: GradingConfig | None = None,
        *,
        temperature: float = 0.3,
    ) -> None:
        self.completion = completion
        self.config = config or GradingConfig()
        self.temperature = temperature

    async def rewrite(self, query: str, feedback: str) -> RewriteResult:
        raw = await self.completion.complete(
            RETRY_REWRITE_PROMPT.format(query=query, feedback=feedback or "none"),
            self.temperature,
        )
        candidate = clean_model_query(raw)
        reason = rejection_reason(query, candidate, self.config.max_rewrite_length_ratio)
        if reason is None and candidate == query.strip():
            reason = "rewrite identical to the original query"
        if reason is not None:
            logger.info("rejected retrieval rewrite %r: %s", candidate, reason)
            return RewriteResult(query=query, accepted=False, reason=reason)
        return RewriteResult(query=candidate, accepted=True, reason="rewritten")

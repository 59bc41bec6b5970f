"""Post-hoc verification of delivered answers."""

from __future__ import annotations

import logging

from adaptive_rag.config import VerificationConfig
from adaptive_rag.obs.tracing import GroundednessEvaluator
from adaptive_rag.orchestrator.generation import format_context
from adaptive_rag.prompts import VERIFICATION_PROMPT
from adaptive_rag.providers.base import CompletionProvider
from adaptive_rag.text import coerce_unit_score, parse_json_object, strip_reasoning
from adaptive_rag.types import CorrectionEvent, RetrievedDocument

logger = logging.getLogger(__name__)


class PostHocVerifier:
    """Re-checks an answer against its evidence and proposes a correction when badly off.

    A correction is produced only for a `severe` verdict whose confidence is
    above `confidence_threshold` and that comes with a corrected answer. Without
    a judge model only the overlap-based groundedness score is computed.
    """

    def __init__(
        self,
        completion: CompletionProvider | None = None,
        config: VerificationConfig | None = None,
        *,
        evaluator: GroundednessEvaluator | None = None,
        temperature: float = 0.0,
    ) -> None:
        self.completion = completion
        self.config = config or VerificationConfig()
        self.evaluator = evaluator or GroundednessEvaluator(self.config.min_overlap)
        self.temperature = temperature

    @property
    def can_correct(self) -> bool:
        return self.config.enabled and self.completion is not None

    async def verify(
        self,
        *,
        trace_id: str,
        query: str,
        answer: str,
        documents: list[RetrievedDocument],
    ) -> CorrectionEvent | None:
        if not documents or not answer.strip():
            return None

        snippets = [doc.content for doc in documents]
        groundedness = self.evaluator.score(answer, snippets)
        logger.debug("turn %s groundedness %.3f", trace_id, groundedness)
        if self.completion is None:
            return None

        context = format_context(documents)[: self.config.context_chars]
        raw = await self.completion.complete(
            VERIFICATION_PROMPT.format(query=query, context=context, answer=answer),
            self.temperature,
        )
        payload = parse_json_object(raw)
        severity = str(payload.get("severity") or "none").lower()
        confidence = coerce_unit_score(payload.get("confidence", 0.0))
        corrected = payload.get("corrected_answer")
        corrected = strip_reasoning(corrected) if isinstance(corrected, str) else ""

        if severity != "severe" or confidence <= self.config.confidence_threshold:
            return None
        if not corrected or corrected == answer.strip():
            return None

        claims = payload.get("problematic_claims") or []
        return CorrectionEvent(
            trace_id=trace_id,
            query=query,
            original_answer=answer,
            corrected_answer=corrected,
            confidence=confidence,
            severity=severity,
            problematic_claims=[str(claim) for claim in claims if str(claim).strip()],
        )

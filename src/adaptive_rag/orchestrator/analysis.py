"""Intent analysis: decides whether a turn needs retrieval."""

from __future__ import annotations

import logging

from adaptive_rag.context.window import format_history
from adaptive_rag.errors import MalformedOutputError
from adaptive_rag.prompts import ANALYSIS_PROMPT
from adaptive_rag.providers.base import CompletionProvider
from adaptive_rag.text import coerce_unit_score, extract_keywords, is_greeting, parse_json_object
from adaptive_rag.types import ConversationMessage, OrchestratorDecision, QueryAnalysis

logger = logging.getLogger(__name__)

_CHIT_CHAT_INTENTS = frozenset({"greeting", "chitchat", "chit-chat", "small_talk"})
_COMPLEXITIES = frozenset({"simple", "moderate", "complex"})


def greeting_analysis(query: str) -> tuple[QueryAnalysis, OrchestratorDecision]:
    analysis = QueryAnalysis(
        intent="greeting",
        complexity="simple",
        needs_retrieval=False,
        keywords=[],
        confidence=1.0,
        reasoning="simple greeting; no knowledge-base lookup needed",
    )
    return analysis, OrchestratorDecision(
        action="generate", intent="greeting", confidence=1.0, reasoning=analysis.reasoning
    )


def default_analysis(query: str, reason: str) -> tuple[QueryAnalysis, OrchestratorDecision]:
    """Retrieve-by-default analysis used offline and whenever the analyzer fails."""
    keywords = extract_keywords(query)
    complexity = "simple" if len(keywords) <= 3 else "moderate"
    analysis = QueryAnalysis(
        intent="factual",
        complexity=complexity,
        needs_retrieval=True,
        keywords=keywords,
        confidence=0.5,
        reasoning=reason,
    )
    return analysis, OrchestratorDecision(
        action="tool_call",
        intent="factual",
        confidence=0.5,
        reasoning=reason,
        search_query=query,
    )


class QueryAnalyzer:
    """Greeting pre-check, then a model-based intent analysis with a retrieve-by-default fallback."""

    def __init__(self, completion: CompletionProvider | None = None, *, temperature: float = 0.0) -> None:
        self.completion = completion
        self.temperature = temperature

    async def analyze(
        self, query: str, history: list[ConversationMessage] | None = None
    ) -> tuple[QueryAnalysis, OrchestratorDecision]:
        if is_greeting(query):
            return greeting_analysis(query)
        if self.completion is None:
            return default_analysis(query, "heuristic analysis (no model configured)")

        raw = await self.completion.complete(
            ANALYSIS_PROMPT.format(query=query, history=format_history(list(history or [])[-6:])),
            self.temperature,
        )
        try:
            payload = parse_json_object(raw)
        except MalformedOutputError as exc:
            logger.info("analysis output unparseable, defaulting to retrieval: %s", exc)
            return default_analysis(query, "analysis output could not be parsed")
        return self._from_payload(query, payload)

    @staticmethod
    def _from_payload(query: str, payload: dict) -> tuple[QueryAnalysis, OrchestratorDecision]:
        intent = str(payload.get("intent") or "factual").lower()
        complexity = str(payload.get("complexity") or "moderate").lower()
        if complexity not in _COMPLEXITIES:
            complexity = "moderate"
        try:
            confidence = coerce_unit_score(payload.get("confidence", 0.5))
        except MalformedOutputError:
            confidence = 0.5
        keywords = [str(item) for item in payload.get("keywords") or [] if str(item).strip()]
        reasoning = str(payload.get("reasoning") or "")

        # Only chit-chat may skip retrieval.
        needs_retrieval = not (
            intent in _CHIT_CHAT_INTENTS and payload.get("needs_retrieval") is False
        )
        analysis = QueryAnalysis(
            intent=intent,
            complexity=complexity,
            needs_retrieval=needs_retrieval,
            keywords=keywords or extract_keywords(query),
            confidence=confidence,
            reasoning=reasoning,
        )

        clarify_question = payload.get("clarify_question")
        if payload.get("action") == "clarify" and isinstance(clarify_question, str) and clarify_question.strip():
            decision = OrchestratorDecision(
                action="clarify",
                intent=intent,
                confidence=confidence,
                reasoning=reasoning,
                clarify_question=clarify_question.strip(),
            )
        elif needs_retrieval:
            search_query = payload.get("search_query")
            decision = OrchestratorDecision(
                action="tool_call",
                intent=intent,
                confidence=confidence,
                reasoning=reasoning,
                search_query=search_query.strip() if isinstance(search_query, str) and search_query.strip() else query,
            )
        else:
            decision = OrchestratorDecision(
                action="generate", intent=intent, confidence=confidence, reasoning=reasoning
            )
        return analysis, decision

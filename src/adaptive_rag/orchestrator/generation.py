"""Answer generation: model-backed (complete or streamed) or extractive."""

from __future__ import annotations

import html
import re

from adaptive_rag.config import EngineConfig
from adaptive_rag.context.window import format_history
from adaptive_rag.orchestrator.state import TokenSink
from adaptive_rag.prompts import ANSWER_PROMPT, DIRECT_PROMPT
from adaptive_rag.providers.base import CompletionProvider
from adaptive_rag.text import strip_reasoning
from adaptive_rag.types import ConversationMessage, OrchestratorDecision, RetrievedDocument

_CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")
_TAG_PATTERN = re.compile(r"<[^>]+>")
_CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SENTENCE_PATTERN = re.compile(r"(?<=[.!?。！？])\s*")

NO_EVIDENCE_ANSWER_ZH = "无法在已索引文档中找到可验证证据。"
NO_EVIDENCE_ANSWER_EN = "I could not find verifiable evidence in the indexed documents."
GREETING_ANSWER_ZH = "你好！我是知识库助手，有什么可以帮你的吗？"
GREETING_ANSWER_EN = "Hello! I'm the knowledge-base assistant. How can I help you?"
APOLOGY_ANSWER_ZH = "抱歉，处理您的问题时出现了错误，请稍后重试。"
APOLOGY_ANSWER_EN = "Sorry, something went wrong while answering your question. Please try again later."


def prefers_chinese(text: str) -> bool:
    return bool(_CJK_PATTERN.search(text))


def apology_answer(query: str) -> str:
    return APOLOGY_ANSWER_ZH if prefers_chinese(query) else APOLOGY_ANSWER_EN


def clean_document_text(text: str, max_chars: int) -> str:
    cleaned = _TAG_PATTERN.sub(" ", html.unescape(text))
    cleaned = _CONTROL_PATTERN.sub("", cleaned)
    cleaned = re.sub(r"[ \t]+", " ", cleaned).strip()
    if len(cleaned) > max_chars:
        cleaned = cleaned[:max_chars] + "..."
    return cleaned


def format_context(documents: list[RetrievedDocument], *, max_chars: int = 2000) -> str:
    """Render evidence as an XML block the answer prompt can cite from."""
    if not documents:
        return "<retrieved_documents>\n(no documents found)\n</retrieved_documents>"
    parts = ["<retrieved_documents>"]
    for index, doc in enumerate(documents, start=1):
        score = doc.rerank_score if doc.rerank_score is not None else doc.score
        parts.append(
            f'<document index="{index}" source="{html.escape(doc.id, quote=True)}" score="{score:.4f}">\n'
            f"{clean_document_text(doc.content, max_chars)}\n"
            "</document>"
        )
    parts.append("</retrieved_documents>")
    return "\n".join(parts)


def extractive_answer(query: str, documents: list[RetrievedDocument], limit: int = 3) -> str:
    """Numbered, cited snippets from the top documents; used without a model."""
    if not documents:
        return NO_EVIDENCE_ANSWER_ZH if prefers_chinese(query) else NO_EVIDENCE_ANSWER_EN

    lines: list[str] = []
    for idx, doc in enumerate(documents[:limit], start=1):
        lines.append(f"{idx}. {_lead_snippet(doc.content)} [{doc.id}]")
    return "\n".join(lines)


def _lead_snippet(content: str, max_chars: int = 300) -> str:
    text = clean_document_text(content, max_chars * 2).replace("\n", " ")
    sentences = [item.strip() for item in _SENTENCE_PATTERN.split(text) if item.strip()]
    snippet = ""
    for sentence in sentences:
        if snippet and len(snippet) + len(sentence) > max_chars:
            break
        snippet = f"{snippet} {sentence}".strip()
    return snippet[:max_chars] if snippet else text[:max_chars]


class AnswerGenerator:
    """Produces the final answer for a turn."""

    def __init__(
        self,
        completion: CompletionProvider | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.completion = completion
        self.config = config or EngineConfig()

    async def generate(
        self,
        query: str,
        documents: list[RetrievedDocument],
        *,
        history: list[ConversationMessage] | None = None,
        decision: OrchestratorDecision | None = None,
        temperature: float = 0.7,
        on_token: TokenSink | None = None,
    ) -> str:
        if decision is not None and decision.action == "clarify" and decision.clarify_question:
            return await _emit_whole(decision.clarify_question, on_token)

        direct = decision is not None and decision.action == "generate"
        if self.completion is None:
            if direct:
                answer = GREETING_ANSWER_ZH if prefers_chinese(query) else GREETING_ANSWER_EN
            else:
                answer = extractive_answer(query, documents)
            return await _emit_whole(answer, on_token)

        prompt = self.build_prompt(query, documents, history=history, direct=direct)
        if on_token is None:
            return strip_reasoning(await self.completion.complete(prompt, temperature))

        chunks: list[str] = []
        async for chunk in self.completion.stream(prompt, temperature):
            chunks.append(chunk)
            await on_token(chunk)
        return strip_reasoning("".join(chunks))

    def build_prompt(
        self,
        query: str,
        documents: list[RetrievedDocument],
        *,
        history: list[ConversationMessage] | None = None,
        direct: bool = False,
    ) -> str:
        history_text = format_history(list(history or []))
        if direct:
            return DIRECT_PROMPT.format(query=query, history=history_text)
        context = format_context(
            documents[: self.config.max_context_documents],
            max_chars=self.config.context_document_chars,
        )
        return ANSWER_PROMPT.format(context=context, history=history_text, query=query)


async def _emit_whole(answer: str, on_token: TokenSink | None) -> str:
    if on_token is not None:
        await on_token(answer)
    return answer

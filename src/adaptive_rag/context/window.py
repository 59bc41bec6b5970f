"""Conversation window trimming, summary compression and follow-up rewriting."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, get_buffer_string

from adaptive_rag.config import WindowConfig
from adaptive_rag.context.tokens import estimate_tokens
from adaptive_rag.grading.rewriter import clean_model_query, rejection_reason
from adaptive_rag.prompts import FOLLOW_UP_PROMPT, SUMMARY_PROMPT
from adaptive_rag.providers.base import CompletionProvider
from adaptive_rag.text import is_topic_switch, looks_like_follow_up, strip_reasoning
from adaptive_rag.types import ConversationMessage, MessageRole

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Conversation summary]"


def new_message(
    role: MessageRole, content: str, *, timestamp: float | None = None
) -> ConversationMessage:
    return ConversationMessage(
        id=uuid.uuid4().hex,
        role=role,
        content=content,
        timestamp=timestamp if timestamp is not None else time.time(),
        token_count=estimate_tokens(content),
    )


def is_summary(message: ConversationMessage) -> bool:
    return message.role == "system" and message.content.startswith(SUMMARY_PREFIX)


def to_langchain_messages(messages: list[ConversationMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "user":
            converted.append(HumanMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(SystemMessage(content=message.content))
    return converted


def format_history(messages: list[ConversationMessage]) -> str:
    if not messages:
        return "(none)"
    return get_buffer_string(
        to_langchain_messages(messages), human_prefix="User", ai_prefix="Assistant"
    )


def message_tokens(messages: list[ConversationMessage]) -> int:
    return sum(estimate_tokens(message.content) for message in messages)


@dataclass(slots=True)
class TrimResult:
    messages: list[ConversationMessage]
    removed_count: int
    total_tokens: int
    strategy: str


@dataclass(slots=True)
class CompressionResult:
    messages: list[ConversationMessage]
    compressed: bool
    compressed_count: int = 0
    summarized_rounds: int = 0
    summary: str | None = None
    reason: str = ""


@dataclass(slots=True)
class FollowUpRewrite:
    query: str
    rewritten: bool
    reason: str


class ContextWindowManager:
    """Keeps conversation history inside a turn-count and token budget.

    Strategies:
    - `sliding_window`: keep the last `2 * max_rounds` non-system messages.
    - `token_limit`: keep the longest recent suffix that fits `max_tokens`.
    - `hybrid`: sliding window first, then the token limit.

    Every strategy keeps preserved system messages first and never lets the
    kept conversation begin with an assistant reply.
    """

    def __init__(
        self,
        config: WindowConfig | None = None,
        *,
        summarizer: CompletionProvider | None = None,
        rewriter: CompletionProvider | None = None,
        temperature: float = 0.0,
    ) -> None:
        self.config = config or WindowConfig()
        self.summarizer = summarizer
        self.rewriter = rewriter
        self.temperature = temperature

    def trim(self, messages: list[ConversationMessage]) -> TrimResult:
        strategy = self.config.strategy
        if strategy == "sliding_window":
            kept = self.sliding_window(messages)
        elif strategy == "token_limit":
            kept = self.token_limit(messages)
        else:
            kept = self.token_limit(self.sliding_window(messages))
        return TrimResult(
            messages=kept,
            removed_count=len(messages) - len(kept),
            total_tokens=message_tokens(kept),
            strategy=strategy,
        )

    def sliding_window(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        limit = 2 * self.config.max_rounds
        system, conversation = self._split(messages)
        if len(conversation) <= limit and self._starts_on_user(conversation):
            return list(messages)
        return system + _drop_leading_assistant(conversation[-limit:])

    def token_limit(self, messages: list[ConversationMessage]) -> list[ConversationMessage]:
        budget = self.config.max_tokens
        system, conversation = self._split(messages)

        kept_system: list[ConversationMessage] = []
        used = 0
        for message in system:
            cost = estimate_tokens(message.content)
            if used + cost > budget:
                logger.warning("system message %s does not fit the token budget; dropped", message.id)
                continue
            kept_system.append(message)
            used += cost

        kept: list[ConversationMessage] = []
        for message in reversed(conversation):
            cost = estimate_tokens(message.content)
            if used + cost > budget:
                break
            kept.append(message)
            used += cost
        kept.reverse()
        return kept_system + _drop_leading_assistant(kept)

    async def compress(
        self,
        messages: list[ConversationMessage],
        previous_summary: str | None = None,
    ) -> CompressionResult:
        """Replace everything but the most recent messages with one summary message.

        Failure to summarize leaves `messages` untouched.
        """

        if self.summarizer is None:
            return CompressionResult(messages=list(messages), compressed=False, reason="no summarizer")

        keep = self.config.keep_recent_messages
        system, conversation = self._split(messages, keep_summaries=False)
        old, recent = conversation[:-keep], conversation[-keep:]
        if len(old) < self.config.min_messages_to_compress:
            return CompressionResult(
                messages=list(messages), compressed=False, reason="not enough old messages"
            )

        prior = previous_summary or "\n".join(
            message.content[len(SUMMARY_PREFIX):].strip() for message in messages if is_summary(message)
        )
        try:
            raw = await self.summarizer.complete(
                SUMMARY_PROMPT.format(
                    previous_summary=prior or "(none)", conversation=format_history(old)
                ),
                self.temperature,
            )
            summary = strip_reasoning(raw)
            if not summary:
                raise ValueError("summarizer returned an empty summary")
        except Exception as exc:
            logger.warning("conversation compression failed, history left untouched: %s", exc)
            return CompressionResult(messages=list(messages), compressed=False, reason=str(exc))

        summary_message = new_message("system", f"{SUMMARY_PREFIX} {summary}")
        return CompressionResult(
            messages=system + [summary_message] + recent,
            compressed=True,
            compressed_count=len(old),
            summarized_rounds=len(old) // 2,
            summary=summary,
            reason="compressed",
        )

    async def resolve_follow_up(
        self, query: str, history: list[ConversationMessage]
    ) -> FollowUpRewrite:
        """Make a pronoun-led or elliptical follow-up standalone using recent history."""
        if not self.config.enable_follow_up_rewrite or self.rewriter is None:
            return FollowUpRewrite(query=query, rewritten=False, reason="follow-up rewriting disabled")
        conversation = [message for message in history if message.role != "system"]
        if not conversation:
            return FollowUpRewrite(query=query, rewritten=False, reason="first turn")
        if is_topic_switch(query):
            return FollowUpRewrite(query=query, rewritten=False, reason="topic switch")
        if not looks_like_follow_up(query):
            return FollowUpRewrite(query=query, rewritten=False, reason="query is complete")

        recent = conversation[-self.config.follow_up_history_messages :]
        try:
            raw = await self.rewriter.complete(
                FOLLOW_UP_PROMPT.format(history=format_history(recent), query=query),
                self.temperature,
            )
        except Exception as exc:
            logger.warning("follow-up rewrite failed, keeping the query: %s", exc)
            return FollowUpRewrite(query=query, rewritten=False, reason="model failure")

        candidate = clean_model_query(raw)
        reason = rejection_reason(query, candidate)
        if reason is not None:
            return FollowUpRewrite(query=query, rewritten=False, reason=reason)
        if candidate == query.strip():
            return FollowUpRewrite(query=query, rewritten=False, reason="already standalone")
        return FollowUpRewrite(query=candidate, rewritten=True, reason="resolved references")

    def _split(
        self, messages: list[ConversationMessage], *, keep_summaries: bool = True
    ) -> tuple[list[ConversationMessage], list[ConversationMessage]]:
        system = [
            message
            for message in messages
            if message.role == "system"
            and self.config.preserve_system_prompt
            and (keep_summaries or not is_summary(message))
        ]
        conversation = [message for message in messages if message.role != "system"]
        return system, conversation

    @staticmethod
    def _starts_on_user(conversation: list[ConversationMessage]) -> bool:
        return not conversation or conversation[0].role == "user"


def _drop_leading_assistant(messages: list[ConversationMessage]) -> list[ConversationMessage]:
    start = 0
    while start < len(messages) and messages[start].role == "assistant":
        start += 1
    return messages[start:]

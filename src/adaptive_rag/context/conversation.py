"""Session-aware turns: load, trim, resolve follow-ups, query, persist."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator

from adaptive_rag.config import QueryOptions
from adaptive_rag.context.window import (
    CompressionResult,
    ContextWindowManager,
    TrimResult,
    is_summary,
    message_tokens,
    new_message,
)
from adaptive_rag.orchestrator.state import CorrectionSink
from adaptive_rag.providers.base import SessionStore
from adaptive_rag.types import (
    NodeExecution,
    QueryResult,
    Session,
    SessionMetadata,
    StreamEvent,
)

if TYPE_CHECKING:
    from adaptive_rag.orchestrator.engine import RagEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnOutcome:
    session: Session
    result: QueryResult
    resolved_query: str
    context_steps: list[NodeExecution]
    trimmed: TrimResult


@dataclass(slots=True)
class _PreparedTurn:
    session: Session
    resolved_query: str
    steps: list[NodeExecution]
    trimmed: TrimResult


class ConversationManager:
    """Runs engine turns inside persisted sessions with a bounded context window."""

    def __init__(
        self,
        engine: "RagEngine",
        store: SessionStore,
        window: ContextWindowManager | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.window = window or ContextWindowManager()

    async def create_session(
        self,
        *,
        user_id: str | None = None,
        session_id: str | None = None,
        system_prompt: str | None = None,
    ) -> Session:
        now = time.time()
        messages = [new_message("system", system_prompt)] if system_prompt else []
        session = Session(
            session_id=session_id or uuid.uuid4().hex,
            messages=messages,
            metadata=SessionMetadata(
                created_at=now,
                last_active_at=now,
                total_tokens=message_tokens(messages),
                message_count=len(messages),
            ),
            user_id=user_id,
        )
        await self.store.save(session)
        return session

    async def get_session(self, session_id: str) -> Session:
        session = await self.store.load(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}")
        return session

    async def delete_session(self, session_id: str) -> bool:
        return await self.store.delete(session_id)

    async def list_sessions(self) -> list[dict[str, Any]]:
        """Metadata of every stored session, most recently active first."""
        summaries: list[dict[str, Any]] = []
        for session_id in await self.store.list_ids():
            session = await self.store.load(session_id)
            if session is None:
                continue
            summaries.append(
                {
                    "session_id": session.session_id,
                    "user_id": session.user_id,
                    **asdict(session.metadata),
                    "message_count": len(session.messages),
                    "has_summary": session.summary is not None,
                }
            )
        summaries.sort(key=lambda item: item["last_active_at"], reverse=True)
        return summaries

    async def process_turn(
        self,
        session_id: str,
        query: str,
        options: QueryOptions | None = None,
        *,
        on_correction: CorrectionSink | None = None,
    ) -> TurnOutcome:
        prepared = await self._prepare(session_id, query)
        result = await self.engine.query(
            prepared.resolved_query,
            options,
            history=prepared.trimmed.messages,
            on_correction=on_correction,
        )
        save_step = await self._record_and_save(prepared.session, query, result)
        return TurnOutcome(
            session=prepared.session,
            result=result,
            resolved_query=prepared.resolved_query,
            context_steps=prepared.steps + [save_step],
            trimmed=prepared.trimmed,
        )

    async def stream_turn(
        self,
        session_id: str,
        query: str,
        options: QueryOptions | None = None,
        *,
        on_correction: CorrectionSink | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Like `RagEngine.stream_query`, preceded by context steps and followed by the save step."""
        prepared = await self._prepare(session_id, query)
        for step in prepared.steps:
            yield StreamEvent(type="workflow", data=asdict(step))

        async for event in self.engine.stream_query(
            prepared.resolved_query,
            options,
            history=prepared.trimmed.messages,
            on_correction=on_correction,
        ):
            if event.type != "done":
                yield event
                continue
            result = _result_from_payload(event.data)
            save_step = await self._record_and_save(prepared.session, query, result)
            yield StreamEvent(type="workflow", data=asdict(save_step))
            yield StreamEvent(
                type="done",
                data={
                    **event.data,
                    "session_id": prepared.session.session_id,
                    "resolved_query": prepared.resolved_query,
                },
            )

    async def compress(self, session_id: str) -> CompressionResult:
        session = await self.get_session(session_id)
        outcome = await self.window.compress(session.messages, session.summary)
        if outcome.compressed:
            self._apply_compression(session, outcome)
            await self.store.save(session)
        return outcome

    @staticmethod
    def token_stats(session: Session) -> dict[str, int | float]:
        conversation = [message for message in session.messages if message.role != "system"]
        return {
            "message_count": len(session.messages),
            "conversation_messages": len(conversation),
            "estimated_tokens": message_tokens(session.messages),
            "total_tokens": session.metadata.total_tokens,
            "truncated_count": session.metadata.truncated_count,
            "summarized_rounds": session.metadata.summarized_rounds,
            "has_summary": any(is_summary(message) for message in session.messages),
        }

    async def _prepare(self, session_id: str, query: str) -> _PreparedTurn:
        steps: list[NodeExecution] = []

        load_step = NodeExecution.begin("load_session", {"session_id": session_id})
        session = await self.store.load(session_id)
        created = session is None
        if session is None:
            session = await self.create_session(session_id=session_id)
        steps.append(load_step.complete({"created": created, "messages": len(session.messages)}))

        trim_step = NodeExecution.begin(
            "trim_context",
            {"strategy": self.window.config.strategy, "messages": len(session.messages)},
        )
        trimmed = self.window.trim(session.messages)
        if trimmed.removed_count:
            session.messages = trimmed.messages
            session.metadata.truncated_count += trimmed.removed_count
        steps.append(
            trim_step.complete(
                {"kept": len(trimmed.messages), "removed": trimmed.removed_count, "tokens": trimmed.total_tokens}
            )
        )

        resolve_step = NodeExecution.begin("resolve_follow_up", {"query": query})
        follow_up = await self.window.resolve_follow_up(query, trimmed.messages)
        steps.append(
            resolve_step.complete(
                {"query": follow_up.query, "rewritten": follow_up.rewritten, "reason": follow_up.reason}
            )
        )
        return _PreparedTurn(
            session=session, resolved_query=follow_up.query, steps=steps, trimmed=trimmed
        )

    async def _record_and_save(
        self, session: Session, query: str, result: QueryResult
    ) -> NodeExecution:
        step = NodeExecution.begin("save_session", {"session_id": session.session_id})
        session.messages.append(new_message("user", query))
        session.messages.append(new_message("assistant", result.answer))
        session.metadata.message_count += 2
        session.metadata.last_active_at = time.time()

        compressed = False
        threshold = self.window.config.compress_after_messages
        conversation = [message for message in session.messages if message.role != "system"]
        if threshold and len(conversation) >= threshold:
            outcome = await self.window.compress(session.messages, session.summary)
            if outcome.compressed:
                self._apply_compression(session, outcome)
                compressed = True

        session.metadata.total_tokens = message_tokens(session.messages)
        try:
            await self.store.save(session)
        except Exception as exc:
            logger.error("failed to save session %s: %s", session.session_id, exc)
            return step.fail(exc)
        return step.complete({"messages": len(session.messages), "compressed": compressed})

    @staticmethod
    def _apply_compression(session: Session, outcome: CompressionResult) -> None:
        session.messages = outcome.messages
        session.summary = outcome.summary
        session.metadata.summarized_rounds += outcome.summarized_rounds
        session.metadata.total_tokens = message_tokens(session.messages)


def _result_from_payload(payload: dict) -> QueryResult:
    """Minimal `QueryResult` view of a streamed `done` payload, enough for persistence."""
    return QueryResult(
        trace_id=str(payload.get("trace_id", "")),
        query=str(payload.get("query", "")),
        processed_query=str(payload.get("processed_query", "")),
        answer=str(payload.get("answer", "")),
        trace=[],
        retrieved_docs=[],
        cache_hit=bool(payload.get("cache_hit", False)),
        error=payload.get("error"),
    )


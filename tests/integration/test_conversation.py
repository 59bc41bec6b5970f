from pathlib import Path
from typing import Any

import pytest

from adaptive_rag.config import QueryOptions, WindowConfig
from adaptive_rag.context.conversation import ConversationManager
from adaptive_rag.context.window import ContextWindowManager, is_summary
from adaptive_rag.orchestrator.engine import RagEngine
from adaptive_rag.providers.hashing import HashingEmbedder
from adaptive_rag.providers.session_store import InMemorySessionStore, SqliteSessionStore
from adaptive_rag.providers.vector_store import InMemoryVectorStore
from adaptive_rag.types import Session

DOCUMENTS = [
    ("retention", "customer data retention lasts seven years", {"source": "policy"}),
    ("encryption", "customer data must be encrypted at rest", {"source": "policy"}),
]


class ScriptedCompletion:
    def __init__(self, reply: str | Exception) -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def complete(self, prompt: str, temperature: float = 0.0) -> str:
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply

    async def stream(self, prompt: str, temperature: float = 0.0) -> Any:
        raise NotImplementedError


class BrokenSessionStore(InMemorySessionStore):
    async def save(self, session: Session) -> None:
        if session.messages:
            raise OSError("disk full")
        await super().save(session)


async def _engine() -> RagEngine:
    embedder = HashingEmbedder(dimension=64)
    store = InMemoryVectorStore(dimension=64)
    await store.add_texts(embedder, DOCUMENTS)
    return RagEngine(vector_store=store, embedder=embedder)


OPTIONS = QueryOptions(similarity_threshold=0.0, skip_semantic_cache=True)


async def test_turns_are_appended_and_persisted() -> None:
    store = InMemorySessionStore()
    manager = ConversationManager(await _engine(), store)
    session = await manager.create_session(user_id="user-1", system_prompt="Answer from policy documents.")

    first = await manager.process_turn(session.session_id, "customer data retention policy", OPTIONS)
    second = await manager.process_turn(session.session_id, "customer data encryption rules", OPTIONS)

    assert [step.name for step in first.context_steps] == [
        "load_session",
        "trim_context",
        "resolve_follow_up",
        "save_session",
    ]
    assert all(step.status == "completed" for step in second.context_steps)
    stored = await manager.get_session(session.session_id)
    assert [message.role for message in stored.messages] == ["system", "user", "assistant", "user", "assistant"]
    assert stored.messages[3].content == "customer data encryption rules"
    assert stored.messages[4].content == second.result.answer
    assert stored.metadata.message_count == 5
    assert stored.user_id == "user-1"


async def test_unknown_session_is_created_on_first_turn() -> None:
    manager = ConversationManager(await _engine(), InMemorySessionStore())

    outcome = await manager.process_turn("fresh-session", "customer data retention policy", OPTIONS)

    assert outcome.context_steps[0].output["created"] is True
    assert outcome.session.session_id == "fresh-session"
    assert len((await manager.get_session("fresh-session")).messages) == 2


async def test_get_and_delete_missing_session() -> None:
    manager = ConversationManager(await _engine(), InMemorySessionStore())

    with pytest.raises(KeyError):
        await manager.get_session("missing")
    assert not await manager.delete_session("missing")


async def test_history_is_trimmed_before_the_turn() -> None:
    window = ContextWindowManager(WindowConfig(strategy="sliding_window", max_rounds=1))
    manager = ConversationManager(await _engine(), InMemorySessionStore(), window)
    session_id = (await manager.create_session()).session_id
    for query in ("customer data retention policy", "customer data encryption rules"):
        await manager.process_turn(session_id, query, OPTIONS)

    outcome = await manager.process_turn(session_id, "customer data retention period", OPTIONS)

    assert outcome.trimmed.removed_count == 2
    assert outcome.context_steps[1].output["removed"] == 2
    stored = await manager.get_session(session_id)
    assert stored.metadata.truncated_count == 2
    assert len(stored.messages) == 4


async def test_follow_up_is_rewritten_before_querying() -> None:
    rewriter = ScriptedCompletion("How long does customer data retention last?")
    manager = ConversationManager(
        await _engine(), InMemorySessionStore(), ContextWindowManager(rewriter=rewriter)
    )
    session_id = (await manager.create_session()).session_id
    await manager.process_turn(session_id, "customer data retention policy", OPTIONS)

    outcome = await manager.process_turn(session_id, "That lasts how long?", OPTIONS)

    assert outcome.resolved_query == "How long does customer data retention last?"
    assert outcome.result.query == "How long does customer data retention last?"
    assert outcome.context_steps[2].output["rewritten"] is True
    stored = await manager.get_session(session_id)
    assert stored.messages[-2].content == "That lasts how long?"


async def test_automatic_compression_after_threshold() -> None:
    window = ContextWindowManager(
        WindowConfig(compress_after_messages=6), summarizer=ScriptedCompletion("User asked about policies.")
    )
    manager = ConversationManager(await _engine(), InMemorySessionStore(), window)
    session_id = (await manager.create_session()).session_id
    queries = [
        "customer data retention policy",
        "customer data encryption rules",
        "customer data retention period",
        "customer data encryption standard",
    ]
    for query in queries:
        await manager.process_turn(session_id, query, OPTIONS)

    stored = await manager.get_session(session_id)
    assert any(is_summary(message) for message in stored.messages)
    assert stored.summary == "User asked about policies."
    assert stored.metadata.summarized_rounds >= 1
    stats = ConversationManager.token_stats(stored)
    assert stats["has_summary"] is True


async def test_manual_compression_reports_outcome() -> None:
    window = ContextWindowManager(summarizer=ScriptedCompletion("Summary of four turns."))
    manager = ConversationManager(await _engine(), InMemorySessionStore(), window)
    session_id = (await manager.create_session()).session_id
    for idx in range(4):
        await manager.process_turn(session_id, f"customer data question {idx}", OPTIONS)

    outcome = await manager.compress(session_id)

    assert outcome.compressed
    assert outcome.compressed_count == 4
    stored = await manager.get_session(session_id)
    assert len(stored.messages) == 5
    assert stored.summary == "Summary of four turns."


async def test_save_failure_is_reported_as_failed_step() -> None:
    manager = ConversationManager(await _engine(), BrokenSessionStore())

    outcome = await manager.process_turn("s-1", "customer data retention policy", OPTIONS)

    save_step = outcome.context_steps[-1]
    assert save_step.name == "save_session"
    assert save_step.status == "error"
    assert "disk full" in (save_step.error or "")
    assert outcome.result.answer


async def test_stream_turn_wraps_engine_events(tmp_path: Path) -> None:
    manager = ConversationManager(await _engine(), SqliteSessionStore(tmp_path / "sessions.db"))

    events = [
        event async for event in manager.stream_turn("s-stream", "customer data retention policy", OPTIONS)
    ]

    names = [event.data.get("name") for event in events if event.type == "workflow"]
    assert names[:3] == ["load_session", "trim_context", "resolve_follow_up"]
    assert names[-1] == "save_session"
    assert events[-1].type == "done"
    assert events[-1].data["session_id"] == "s-stream"
    stored = await manager.get_session("s-stream")
    assert [message.role for message in stored.messages] == ["user", "assistant"]
    assert stored.messages[1].content == events[-1].data["answer"]


async def test_list_sessions_orders_by_recent_activity() -> None:
    manager = ConversationManager(await _engine(), InMemorySessionStore())
    older = await manager.create_session(user_id="user-1")
    newer = await manager.create_session(user_id="user-2")
    await manager.process_turn(older.session_id, "customer data retention policy", OPTIONS)

    sessions = await manager.list_sessions()

    assert [item["session_id"] for item in sessions] == [older.session_id, newer.session_id]
    assert sessions[0]["message_count"] == 2
    assert sessions[0]["user_id"] == "user-1"
    assert sessions[1]["message_count"] == 0
    assert sessions[0]["last_active_at"] >= sessions[1]["last_active_at"]


async def test_list_sessions_is_empty_without_sessions() -> None:
    manager = ConversationManager(await _engine(), InMemorySessionStore())

    assert await manager.list_sessions() == []

"""Per-turn state carried through the orchestration graph."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable

from adaptive_rag.config import QueryOptions
from adaptive_rag.types import (
    ConversationMessage,
    CorrectionEvent,
    HybridRetrievalResult,
    NodeExecution,
    OrchestratorDecision,
    QueryAnalysis,
    RetrievalGrade,
    RetrievedDocument,
)

TokenSink = Callable[[str], Awaitable[None]]
CorrectionSink = Callable[[CorrectionEvent], Any]


@dataclass(slots=True)
class AgentState:
    """Everything one turn knows; fields stay None until their node has run."""

    trace_id: str
    query: str
    options: QueryOptions
    processed_query: str = ""
    history: list[ConversationMessage] = field(default_factory=list)
    query_embedding: list[float] | None = None
    analysis: QueryAnalysis | None = None
    decision: OrchestratorDecision | None = None
    retrieval: HybridRetrievalResult | None = None
    documents: list[RetrievedDocument] = field(default_factory=list)
    grade: RetrievalGrade | None = None
    retry_count: int = 0
    rewrite_rejected: bool = False
    generation_started: bool = False
    generation_succeeded: bool = False
    answer: str = ""
    trace: list[NodeExecution] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    token_sink: TokenSink | None = field(default=None, repr=False)
    correction_sink: CorrectionSink | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.processed_query:
            self.processed_query = self.query

    @property
    def total_duration_ms(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return (end - self.started_at) * 1000.0


_FIELD_NAMES = frozenset(item.name for item in fields(AgentState))
_APPEND_FIELDS = frozenset({"trace"})
_IMMUTABLE_FIELDS = frozenset({"trace_id", "query", "options"})


def apply_patch(state: AgentState, patch: dict[str, Any]) -> AgentState:
    """Merge a node's partial update: list fields append, everything else is last-write-wins."""
    for key, value in patch.items():
        if key not in _FIELD_NAMES:
            raise KeyError(f"Unknown state field: {key}")
        if key in _IMMUTABLE_FIELDS:
            raise ValueError(f"State field is immutable: {key}")
        if key == "processed_query" and state.generation_started and value != state.processed_query:
            raise ValueError("processed_query cannot change once generation has started")
        if key in _APPEND_FIELDS:
            getattr(state, key).extend(value)
        else:
            setattr(state, key, value)
    return state

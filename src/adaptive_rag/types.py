"""Shared domain models."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

DocumentSource = Literal["dense", "sparse", "hybrid"]
NodeStatus = Literal["pending", "running", "completed", "skipped", "error"]
MessageRole = Literal["user", "assistant", "system"]
DecisionAction = Literal["tool_call", "generate", "clarify"]
StreamEventType = Literal["workflow", "token", "done", "error", "correction"]

_TERMINAL_STATUSES = frozenset({"completed", "skipped", "error"})


@dataclass(slots=True)
class RetrievedDocument:
    """A retrieval result with score and leg provenance."""

    id: str
    content: str
    metadata: dict[str, Any]
    score: float
    source: DocumentSource = "dense"
    rerank_score: float | None = None
    similarity: float | None = None


@dataclass(slots=True)
class DocumentGrade:
    document_id: str
    score: float
    reasoning: str


@dataclass(slots=True)
class RetrievalGrade:
    """One grading verdict over the evidence set of a retrieval attempt."""

    is_relevant: bool
    score: float
    reasoning: str
    document_grades: list[DocumentGrade] = field(default_factory=list)
    method: str = "judge"
    should_rewrite: bool = False


@dataclass(slots=True)
class QueryAnalysis:
    intent: str
    complexity: str
    needs_retrieval: bool
    keywords: list[str]
    confidence: float
    reasoning: str = ""


@dataclass(slots=True)
class OrchestratorDecision:
    """Routing tag for a turn: retrieve (`tool_call`), answer directly, or clarify."""

    action: DecisionAction
    intent: str
    confidence: float
    reasoning: str = ""
    search_query: str | None = None
    clarify_question: str | None = None


@dataclass(slots=True)
class NodeExecution:
    """Append-only audit record for one node (or parallel sub-task) of a turn."""

    name: str
    status: NodeStatus = "pending"
    start_time: float | None = None
    end_time: float | None = None
    duration_ms: float | None = None
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def begin(cls, name: str, input_payload: dict[str, Any] | None = None) -> "NodeExecution":
        return cls(
            name=name,
            status="running",
            start_time=time.time(),
            input=dict(input_payload or {}),
        )

    @classmethod
    def skipped(cls, name: str, reason: str) -> "NodeExecution":
        now = time.time()
        return cls(
            name=name,
            status="skipped",
            start_time=now,
            end_time=now,
            duration_ms=0.0,
            output={"reason": reason},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUSES

    def complete(self, output: dict[str, Any] | None = None) -> "NodeExecution":
        self._close("completed")
        self.output = dict(output or {})
        return self

    def fail(self, error: BaseException | str) -> "NodeExecution":
        self._close("error")
        self.error = str(error) or type(error).__name__
        return self

    def _close(self, status: NodeStatus) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Node execution already finalized: {self.name} ({self.status})")
        self.status = status
        self.end_time = time.time()
        start = self.start_time if self.start_time is not None else self.end_time
        self.duration_ms = (self.end_time - start) * 1000.0


@dataclass(slots=True)
class ConversationMessage:
    id: str
    role: MessageRole
    content: str
    timestamp: float
    token_count: int


@dataclass(slots=True)
class SessionMetadata:
    created_at: float
    last_active_at: float
    total_tokens: int = 0
    message_count: int = 0
    truncated_count: int = 0
    summarized_rounds: int = 0


@dataclass(slots=True)
class Session:
    """One conversation: ordered messages plus bookkeeping metadata."""

    session_id: str
    messages: list[ConversationMessage]
    metadata: SessionMetadata
    user_id: str | None = None
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Session":
        return cls(
            session_id=str(payload["session_id"]),
            messages=[ConversationMessage(**item) for item in payload.get("messages", [])],
            metadata=SessionMetadata(**payload["metadata"]),
            user_id=payload.get("user_id"),
            summary=payload.get("summary"),
        )


@dataclass(slots=True)
class SemanticCacheEntry:
    query_embedding: list[float]
    query: str
    answer: str
    context: list[RetrievedDocument]
    created_at: float


@dataclass(slots=True)
class RetrievalStats:
    dense_count: int = 0
    sparse_count: int = 0
    fused_count: int = 0
    reranked_count: int = 0
    embedding_dimension: int | None = None
    dense_ms: float = 0.0
    sparse_ms: float = 0.0
    fusion_ms: float = 0.0
    rerank_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(slots=True)
class HybridRetrievalResult:
    """Output of one hybrid retrieval pass, including every intermediate ranking."""

    documents: list[RetrievedDocument]
    status: Literal["completed", "skipped"]
    dense: list[RetrievedDocument] = field(default_factory=list)
    sparse: list[RetrievedDocument] = field(default_factory=list)
    fused: list[RetrievedDocument] = field(default_factory=list)
    stats: RetrievalStats = field(default_factory=RetrievalStats)


@dataclass(slots=True)
class CorrectionEvent:
    """Emitted once by post-hoc verification when a delivered answer must be amended."""

    trace_id: str
    query: str
    original_answer: str
    corrected_answer: str
    confidence: float
    severity: str
    problematic_claims: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StreamEvent:
    type: StreamEventType
    data: dict[str, Any]


@dataclass(slots=True)
class QueryResult:
    """Full structured outcome of one turn."""

    trace_id: str
    query: str
    processed_query: str
    answer: str
    trace: list[NodeExecution]
    retrieved_docs: list[RetrievedDocument]
    cache_hit: bool = False
    retry_count: int = 0
    analysis: QueryAnalysis | None = None
    decision: OrchestratorDecision | None = None
    grade: RetrievalGrade | None = None
    error: str | None = None
    error_kind: str | None = None
    total_duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

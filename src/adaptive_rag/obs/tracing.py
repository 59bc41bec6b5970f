"""Turn records, cost accounting, and groundedness evaluation."""

from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from adaptive_rag.context.tokens import estimate_tokens
from adaptive_rag.text import tokenize
from adaptive_rag.types import CorrectionEvent, NodeExecution, QueryResult

_SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[.!?。！？])\s*")
_CITATION_PATTERN = re.compile(r"\[[^\]]+\]")


@dataclass(slots=True)
class TurnRecord:
    trace_id: str
    timestamp_utc: str
    query: str
    processed_query: str
    answer: str
    cache_hit: bool
    retry_count: int
    steps: list[NodeExecution]
    retrieved_ids: list[str]
    source_snippets: list[str]
    input_tokens: int
    output_tokens: int
    estimated_cost_usd: float
    latency_ms: float
    groundedness: float
    error: str | None = None
    corrections: list[CorrectionEvent] = field(default_factory=list)


@dataclass(slots=True)
class CostModel:
    """Simple token pricing model (USD per 1K tokens)."""

    input_per_1k: float = 0.005
    output_per_1k: float = 0.015

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000.0) * self.input_per_1k + (
            output_tokens / 1000.0
        ) * self.output_per_1k


class GroundednessEvaluator:
    """Computes attribution correctness from answer-source overlap.

    Metric definition used here:
    - Split the answer into sentences.
    - Remove citation tags like `[doc-1]`.
    - A sentence is grounded if at least one source snippet covers a share of
      its terms of at least `min_overlap`.

    Terms are Latin words and single CJK characters, so Chinese answers are
    scored at character granularity.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, source_snippets: list[str]) -> float:
        sentences = [
            sentence.strip()
            for sentence in _SENTENCE_SPLIT_PATTERN.split(answer)
            if sentence.strip()
        ]
        if not sentences:
            return 1.0
        if not source_snippets:
            return 0.0

        source_term_sets = [set(tokenize(source)) for source in source_snippets]
        grounded = 0
        for sentence in sentences:
            sentence_terms = set(tokenize(_CITATION_PATTERN.sub("", sentence)))
            if not sentence_terms:
                grounded += 1
                continue
            if any(
                self._overlap(sentence_terms, source_terms) >= self.min_overlap
                for source_terms in source_term_sets
            ):
                grounded += 1

        return grounded / len(sentences)

    @staticmethod
    def _overlap(a: set[str], b: set[str]) -> float:
        if not a or not b:
            return 0.0
        return len(a & b) / len(a)


class TraceStore:
    """Bounded in-memory store of completed turns for API-level observability."""

    def __init__(
        self,
        *,
        max_records: int = 1000,
        max_pending_corrections: int = 100,
        cost_model: CostModel | None = None,
        groundedness_evaluator: GroundednessEvaluator | None = None,
    ) -> None:
        self.max_records = max_records
        self.max_pending_corrections = max_pending_corrections
        self._records: OrderedDict[str, TurnRecord] = OrderedDict()
        self._cost_model = cost_model or CostModel()
        self._groundedness = groundedness_evaluator or GroundednessEvaluator()
        # Corrections that finished before their turn was recorded.
        self._pending_corrections: OrderedDict[str, list[CorrectionEvent]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def record_turn(self, result: QueryResult) -> TurnRecord:
        snippets = [doc.content for doc in result.retrieved_docs]
        input_tokens = estimate_tokens(result.processed_query) + sum(
            estimate_tokens(snippet) for snippet in snippets
        )
        output_tokens = estimate_tokens(result.answer)
        record = TurnRecord(
            trace_id=result.trace_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            query=result.query,
            processed_query=result.processed_query,
            answer=result.answer,
            cache_hit=result.cache_hit,
            retry_count=result.retry_count,
            steps=list(result.trace),
            retrieved_ids=[doc.id for doc in result.retrieved_docs],
            source_snippets=snippets,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost_usd=self._cost_model.estimate_cost(input_tokens, output_tokens),
            latency_ms=result.total_duration_ms,
            groundedness=self._groundedness.score(result.answer, snippets) if snippets else 0.0,
            error=result.error,
        )
        with self._lock:
            record.corrections.extend(self._pending_corrections.pop(record.trace_id, []))
            self._records[record.trace_id] = record
            while len(self._records) > self.max_records:
                self._records.popitem(last=False)
        return record

    def attach_correction(self, event: CorrectionEvent) -> None:
        with self._lock:
            record = self._records.get(event.trace_id)
            if record is None:
                self._pending_corrections.setdefault(event.trace_id, []).append(event)
                while len(self._pending_corrections) > self.max_pending_corrections:
                    self._pending_corrections.popitem(last=False)
            else:
                record.corrections.append(event)

    def get(self, trace_id: str) -> TurnRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TurnRecord]:
        with self._lock:
            return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        with self._lock:
            records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p50_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_groundedness": 0.0,
                "cache_hit_rate": 0.0,
                "rewrite_rate": 0.0,
                "error_count": 0,
                "correction_count": 0,
                "total_input_tokens": 0,
                "total_output_tokens": 0,
                "total_estimated_cost_usd": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p50_index = max(0, int((len(latencies) * 0.5) - 1))
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        generated = [record for record in records if not record.cache_hit]
        avg_groundedness = (
            sum(record.groundedness for record in generated) / len(generated)
            if generated
            else 0.0
        )

        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p50_latency_ms": latencies[p50_index],
            "p95_latency_ms": latencies[p95_index],
            "avg_groundedness": avg_groundedness,
            "cache_hit_rate": sum(1 for record in records if record.cache_hit) / total,
            "rewrite_rate": sum(1 for record in records if record.retry_count > 0) / total,
            "error_count": sum(1 for record in records if record.error),
            "correction_count": sum(len(record.corrections) for record in records),
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
        }


class Timer:
    """Simple context timer used around provider calls and graph nodes."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0

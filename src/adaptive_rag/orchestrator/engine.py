"""Adaptive RAG engine: cache check, then the orchestration graph for one turn."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import asdict, replace
from typing import Any, AsyncIterator, Sequence

from adaptive_rag.cache.semantic import SemanticCache
from adaptive_rag.config import EngineConfig, QueryOptions
from adaptive_rag.errors import ConfigurationError, GraphRecursionError
from adaptive_rag.grading.grader import RetrievalGrader
from adaptive_rag.grading.rewriter import QueryRewriter
from adaptive_rag.obs.tracing import TraceStore
from adaptive_rag.orchestrator.analysis import QueryAnalyzer, default_analysis
from adaptive_rag.orchestrator.generation import AnswerGenerator, apology_answer
from adaptive_rag.orchestrator.graph import END, CompiledGraph, StateGraph, StepObserver
from adaptive_rag.orchestrator.state import AgentState, CorrectionSink, TokenSink, apply_patch
from adaptive_rag.orchestrator.verification import PostHocVerifier
from adaptive_rag.providers.base import CompletionProvider, EmbeddingProvider, VectorStore
from adaptive_rag.retrieval.fusion import JudgeReranker, Reranker
from adaptive_rag.retrieval.retriever import HybridRetriever
from adaptive_rag.text import is_greeting
from adaptive_rag.types import (
    ConversationMessage,
    HybridRetrievalResult,
    NodeExecution,
    OrchestratorDecision,
    QueryAnalysis,
    QueryResult,
    RetrievedDocument,
    StreamEvent,
)

logger = logging.getLogger(__name__)


class RagEngine:
    """Runs query turns through cache check, hybrid retrieval, grading, rewrite and generation.

    Providers are injected. `completion` generates answers; `fast_completion`
    (defaults to `completion`) serves the analyzer, grader, rewriter, reranker
    and verifier. With no completion model at all the engine runs fully
    deterministic: heuristic analysis, similarity grading, no rewrites and
    extractive answers.
    """

    def __init__(
        self,
        *,
        vector_store: VectorStore,
        embedder: EmbeddingProvider,
        completion: CompletionProvider | None = None,
        fast_completion: CompletionProvider | None = None,
        alternate_embedders: Sequence[EmbeddingProvider] = (),
        config: EngineConfig | None = None,
        cache: SemanticCache | None = None,
        trace_store: TraceStore | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        fast = fast_completion or completion
        judge_temperature = self.config.judge_temperature

        if reranker is None and fast is not None:
            reranker = JudgeReranker(fast, self.config.retrieval, temperature=judge_temperature)
        self.retriever = HybridRetriever(
            vector_store,
            embedder,
            alternate_embedders=alternate_embedders,
            reranker=reranker,
            config=self.config.retrieval,
        )
        self.analyzer = QueryAnalyzer(fast, temperature=judge_temperature)
        self.grader = RetrievalGrader(fast, self.config.grading, temperature=judge_temperature)
        self.rewriter = (
            QueryRewriter(fast, self.config.grading, temperature=self.config.rewrite_temperature)
            if fast is not None
            else None
        )
        self.generator = AnswerGenerator(completion, self.config)
        self.verifier = PostHocVerifier(
            fast, self.config.verification, temperature=judge_temperature
        )
        self.cache = cache or SemanticCache(embedder, self.config.cache)
        self.trace_store = trace_store or TraceStore()
        self.graph = self._build_graph()
        self._background: set[asyncio.Task[None]] = set()

    async def query(
        self,
        query: str,
        options: QueryOptions | None = None,
        *,
        history: list[ConversationMessage] | None = None,
        on_token: TokenSink | None = None,
        on_correction: CorrectionSink | None = None,
    ) -> QueryResult:
        """Run one turn and return the full structured result.

        Never raises for provider failures; the returned trace explains which
        steps ran, were skipped or failed.
        """

        return await self._run_turn(
            query,
            options or QueryOptions(),
            history=history,
            on_token=on_token,
            on_correction=on_correction,
            on_step=None,
        )

    async def stream_query(
        self,
        query: str,
        options: QueryOptions | None = None,
        *,
        history: list[ConversationMessage] | None = None,
        on_correction: CorrectionSink | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield `workflow` events per node, `token` events while generating, then `done`.

        An `error` event precedes `done` when the turn ended with a terminal error.
        """

        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

        async def emit_step(step: NodeExecution) -> None:
            await queue.put(StreamEvent(type="workflow", data=asdict(step)))

        async def emit_token(chunk: str) -> None:
            await queue.put(StreamEvent(type="token", data={"content": chunk}))

        async def run() -> None:
            try:
                result = await self._run_turn(
                    query,
                    options or QueryOptions(),
                    history=history,
                    on_token=emit_token,
                    on_correction=on_correction,
                    on_step=emit_step,
                )
                if result.error is not None:
                    await queue.put(
                        StreamEvent(
                            type="error",
                            data={"message": result.error, "kind": result.error_kind},
                        )
                    )
                await queue.put(StreamEvent(type="done", data=result.to_dict()))
            except Exception as exc:
                logger.exception("streaming turn failed")
                await queue.put(StreamEvent(type="error", data={"message": str(exc), "kind": "internal"}))
            finally:
                await queue.put(None)

        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not task.done():
                task.cancel()

    async def wait_for_background_tasks(self, timeout: float | None = None) -> None:
        """Wait for pending verification tasks (shutdown and tests)."""
        pending = list(self._background)
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def _run_turn(
        self,
        query: str,
        options: QueryOptions,
        *,
        history: list[ConversationMessage] | None,
        on_token: TokenSink | None,
        on_correction: CorrectionSink | None,
        on_step: StepObserver | None,
    ) -> QueryResult:
        state = AgentState(
            trace_id=str(uuid.uuid4()),
            query=query,
            options=options,
            history=list(history or []),
            token_sink=on_token,
            correction_sink=on_correction,
        )

        cache_step, terminal = await self._cache_check(state)
        state.trace.append(cache_step)
        await _notify(on_step, cache_step)
        if terminal is not None:
            apply_patch(state, self._terminal_patch(state, terminal))
        if cache_step.status == "completed" and cache_step.output.get("hit"):
            return await self._cached_result(state, cache_step)

        try:
            await self.graph.ainvoke(state, on_step=on_step)
        except GraphRecursionError as exc:
            logger.error("turn %s aborted: %s", state.trace_id, exc)
            state.error = str(exc)
            state.error_kind = "recursion"
            if not state.generation_succeeded:
                state.answer = apology_answer(query)
            step = NodeExecution.begin("finalize").fail(exc)
            state.trace.append(step)
            state.finished_at = step.end_time
            await _notify(on_step, step)

        result = self._result_from_state(state)
        self.trace_store.record_turn(result)
        return result

    async def _cache_check(
        self, state: AgentState
    ) -> tuple[NodeExecution, ConfigurationError | None]:
        if not self.config.cache.enabled:
            return NodeExecution.skipped("cache_check", "semantic cache disabled"), None
        if state.options.skip_semantic_cache:
            return NodeExecution.skipped("cache_check", "bypassed by request"), None

        step = NodeExecution.begin("cache_check", {"query": state.query})
        try:
            state.query_embedding = await self.cache.embed(state.query)
            hit = await self.cache.lookup(state.query, state.query_embedding)
        except ConfigurationError as exc:
            logger.error("semantic cache lookup configuration error: %s", exc)
            return step.fail(exc), exc
        except Exception as exc:
            logger.warning("semantic cache lookup failed: %s", exc)
            return step.fail(exc), None
        if hit is None:
            return step.complete({"hit": False}), None
        state.answer = hit.entry.answer
        state.documents = list(hit.entry.context)
        return (
            step.complete(
                {"hit": True, "similarity": hit.similarity, "cached_query": hit.entry.query}
            ),
            None,
        )

    async def _cached_result(self, state: AgentState, cache_step: NodeExecution) -> QueryResult:
        if state.token_sink is not None:
            await state.token_sink(state.answer)
        state.finished_at = cache_step.end_time
        result = QueryResult(
            trace_id=state.trace_id,
            query=state.query,
            processed_query=state.query,
            answer=state.answer,
            trace=list(state.trace),
            retrieved_docs=list(state.documents),
            cache_hit=True,
            total_duration_ms=state.total_duration_ms,
        )
        self.trace_store.record_turn(result)
        return result

    def _build_graph(self) -> CompiledGraph:
        graph = StateGraph()
        graph.add_node("fan_out_join", self._fan_out_join)
        graph.add_node("grade_retrieval", self._grade_retrieval)
        graph.add_node("rewrite_query", self._rewrite_query)
        graph.add_node("retrieve_after_rewrite", self._retrieve_after_rewrite)
        graph.add_node("generate", self._generate)
        graph.add_node("finalize", self._finalize)

        graph.set_entry_point("fan_out_join")
        graph.add_conditional_edges(
            "fan_out_join",
            _route_after_fan_out,
            {"grade": "grade_retrieval", "generate": "generate"},
        )
        graph.add_conditional_edges(
            "grade_retrieval",
            _route_after_grade,
            {"rewrite": "rewrite_query", "generate": "generate"},
        )
        graph.add_conditional_edges(
            "rewrite_query",
            _route_after_rewrite,
            {"retrieve": "retrieve_after_rewrite", "generate": "generate"},
        )
        graph.add_edge("retrieve_after_rewrite", "grade_retrieval")
        graph.add_edge("generate", "finalize")
        graph.add_edge("finalize", END)
        return graph.compile(recursion_limit=self.config.recursion_limit, error_exit="finalize")

    async def _fan_out_join(self, state: AgentState) -> dict[str, Any]:
        greeting = is_greeting(state.query)
        analysis_step = NodeExecution.begin("analyze_query", {"query": state.query})
        if greeting:
            retrieve_step = NodeExecution.skipped("retrieve", "greeting detected")
            analyzed, retrieved = await asyncio.gather(
                self._analyze(state, analysis_step), _no_retrieval()
            )
        else:
            retrieve_step = NodeExecution.begin(
                "retrieve", {"query": state.query, "top_k": state.options.top_k}
            )
            analyzed, retrieved = await asyncio.gather(
                self._analyze(state, analysis_step),
                self._retrieve(state.query, state, retrieve_step),
            )
        analysis, decision, analysis_error = analyzed
        retrieval, retrieval_error = retrieved
        terminal = retrieval_error or analysis_error

        patch: dict[str, Any] = {
            "analysis": analysis,
            "decision": decision,
            "retrieval": retrieval,
            "documents": retrieval.documents if retrieval is not None else [],
            "trace": [analysis_step, retrieve_step],
        }
        if terminal is not None:
            patch.update(self._terminal_patch(state, terminal))
        elif decision.action != "tool_call":
            reason = "clarification requested" if decision.action == "clarify" else "retrieval not needed"
            patch["trace"].append(NodeExecution.skipped("grade_retrieval", reason))
        return patch

    async def _analyze(
        self, state: AgentState, step: NodeExecution
    ) -> tuple[QueryAnalysis, OrchestratorDecision, ConfigurationError | None]:
        try:
            analysis, decision = await self.analyzer.analyze(state.query, state.history)
        except ConfigurationError as exc:
            logger.error("intent analysis configuration error: %s", exc)
            step.fail(exc)
            return (*default_analysis(state.query, "intent analysis failed"), exc)
        except Exception as exc:
            logger.warning("intent analysis failed, defaulting to retrieval: %s", exc)
            step.fail(exc)
            return (*default_analysis(state.query, "intent analysis failed"), None)
        step.complete(
            {
                "intent": analysis.intent,
                "needs_retrieval": analysis.needs_retrieval,
                "action": decision.action,
                "confidence": analysis.confidence,
            }
        )
        return analysis, decision, None

    async def _retrieve(
        self, query: str, state: AgentState, step: NodeExecution
    ) -> tuple[HybridRetrievalResult | None, ConfigurationError | None]:
        options = state.options
        try:
            result = await self.retriever.retrieve(
                query,
                top_k=options.top_k,
                similarity_threshold=options.similarity_threshold,
                enable_bm25=options.enable_bm25,
                enable_rerank=options.enable_rerank,
                rerank_top_k=options.rerank_top_k,
            )
        except ConfigurationError as exc:
            logger.error("retrieval configuration error: %s", exc)
            step.fail(exc)
            return None, exc
        except Exception as exc:
            logger.warning("retrieval failed, continuing without evidence: %s", exc)
            step.fail(exc)
            return None, None
        step.complete(
            {
                "status": result.status,
                "document_ids": [doc.id for doc in result.documents],
                "dense_count": result.stats.dense_count,
                "sparse_count": result.stats.sparse_count,
                "embedding_dimension": result.stats.embedding_dimension,
                "duration_ms": result.stats.total_ms,
            }
        )
        return result, None

    async def _grade_retrieval(self, state: AgentState) -> dict[str, Any]:
        options = state.options
        step = NodeExecution.begin(
            "grade_retrieval",
            {
                "query": state.processed_query,
                "document_count": len(state.documents),
                "retry_count": state.retry_count,
            },
        )
        terminal: ConfigurationError | None = None
        try:
            grade = await self.grader.grade(
                state.processed_query,
                state.documents,
                pass_threshold=options.grade_pass_threshold,
                retry_count=state.retry_count,
                max_retries=options.max_retries,
            )
        except Exception as exc:
            if isinstance(exc, ConfigurationError):
                terminal = exc
            logger.warning("grading failed, using similarity fallback: %s", exc)
            step.fail(exc)
            grade = self.grader.fallback_grade(
                state.documents,
                pass_threshold=options.grade_pass_threshold,
                retry_count=state.retry_count,
                max_retries=options.max_retries,
                reason="grading call failed",
            )
        if grade.should_rewrite and self.rewriter is None:
            grade = replace(grade, should_rewrite=False)
        if not step.is_terminal:
            step.complete(
                {
                    "score": grade.score,
                    "is_relevant": grade.is_relevant,
                    "method": grade.method,
                    "should_rewrite": grade.should_rewrite,
                    "reasoning": grade.reasoning,
                }
            )
        patch: dict[str, Any] = {"grade": grade, "trace": [step]}
        if terminal is not None:
            patch.update(self._terminal_patch(state, terminal))
        return patch

    async def _rewrite_query(self, state: AgentState) -> dict[str, Any]:
        grade = state.grade
        feedback = grade.reasoning if grade is not None else ""
        step = NodeExecution.begin(
            "rewrite_query", {"query": state.processed_query, "feedback": feedback}
        )
        patch: dict[str, Any] = {"retry_count": state.retry_count + 1, "trace": [step]}
        rejected_reason: str | None = None
        try:
            if self.rewriter is None:
                raise RuntimeError("no rewrite model configured")
            outcome = await self.rewriter.rewrite(state.processed_query, feedback)
        except ConfigurationError as exc:
            logger.error("query rewrite configuration error: %s", exc)
            step.fail(exc)
            patch.update(self._terminal_patch(state, exc))
            return patch
        except Exception as exc:
            logger.warning("query rewrite failed, keeping the query: %s", exc)
            step.fail(exc)
            rejected_reason = "rewrite failed"
        else:
            step.complete(
                {"rewritten_query": outcome.query, "accepted": outcome.accepted, "reason": outcome.reason}
            )
            if outcome.accepted:
                patch["processed_query"] = outcome.query
            else:
                rejected_reason = outcome.reason

        if rejected_reason is not None:
            patch["rewrite_rejected"] = True
            if grade is not None:
                patch["grade"] = replace(grade, should_rewrite=False)
            patch["trace"].append(NodeExecution.skipped("retrieve_after_rewrite", rejected_reason))
        return patch

    async def _retrieve_after_rewrite(self, state: AgentState) -> dict[str, Any]:
        step = NodeExecution.begin(
            "retrieve_after_rewrite",
            {"query": state.processed_query, "top_k": state.options.top_k},
        )
        retrieval, terminal = await self._retrieve(state.processed_query, state, step)
        patch: dict[str, Any] = {"trace": [step]}
        if terminal is not None:
            patch.update(self._terminal_patch(state, terminal))
            return patch
        if retrieval is not None and retrieval.documents:
            patch["retrieval"] = retrieval
            patch["documents"] = retrieval.documents
        else:
            logger.info("retrieval after rewrite found nothing; keeping previous evidence")
        return patch

    async def _generate(self, state: AgentState) -> dict[str, Any]:
        step = NodeExecution.begin(
            "generate",
            {
                "query": state.processed_query,
                "document_count": len(state.documents),
                "streaming": state.token_sink is not None,
            },
        )
        patch: dict[str, Any] = {"generation_started": True, "trace": [step]}
        try:
            answer = await self.generator.generate(
                state.processed_query,
                state.documents,
                history=state.history,
                decision=state.decision,
                temperature=state.options.temperature,
                on_token=state.token_sink,
            )
        except ConfigurationError as exc:
            step.fail(exc)
            patch.update(self._terminal_patch(state, exc))
            return patch
        except Exception as exc:
            logger.warning("generation failed, returning fallback answer: %s", exc)
            step.fail(exc)
            patch["answer"] = apology_answer(state.query)
            return patch

        step.complete({"answer_chars": len(answer)})
        patch["answer"] = answer
        patch["generation_succeeded"] = True
        return patch

    async def _finalize(self, state: AgentState) -> dict[str, Any]:
        step = NodeExecution.begin("finalize", {"error": state.error})
        output: dict[str, Any] = {"cached": False, "verification_scheduled": False}

        if state.generation_succeeded and state.error is None:
            if state.options.cache_result and self.config.cache.enabled:
                try:
                    await self.cache.insert(
                        state.query, state.answer, state.documents, state.query_embedding
                    )
                    output["cached"] = True
                except Exception as exc:
                    logger.warning("semantic cache insert failed: %s", exc)
                    output["cache_error"] = str(exc)
            if self.config.verification.enabled and state.documents:
                self._schedule_verification(state)
                output["verification_scheduled"] = True

        step.complete(output)
        state.finished_at = step.end_time
        return {"finished_at": state.finished_at, "trace": [step]}

    def _terminal_patch(self, state: AgentState, exc: ConfigurationError) -> dict[str, Any]:
        return {
            "error": str(exc),
            "error_kind": "configuration",
            "answer": apology_answer(state.query),
        }

    def _schedule_verification(self, state: AgentState) -> None:
        task = asyncio.create_task(
            self._verify(
                trace_id=state.trace_id,
                query=state.processed_query,
                answer=state.answer,
                documents=list(state.documents),
                sink=state.correction_sink,
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _verify(
        self,
        *,
        trace_id: str,
        query: str,
        answer: str,
        documents: list[RetrievedDocument],
        sink: CorrectionSink | None,
    ) -> None:
        try:
            event = await self.verifier.verify(
                trace_id=trace_id, query=query, answer=answer, documents=documents
            )
            if event is None:
                return
            logger.info("turn %s: post-hoc verification issued a correction", trace_id)
            self.trace_store.attach_correction(event)
            if sink is not None:
                outcome = sink(event)
                if inspect.isawaitable(outcome):
                    await outcome
        except Exception as exc:
            logger.debug("post-hoc verification failed for %s: %s", trace_id, exc)

    def _result_from_state(self, state: AgentState) -> QueryResult:
        return QueryResult(
            trace_id=state.trace_id,
            query=state.query,
            processed_query=state.processed_query,
            answer=state.answer,
            trace=list(state.trace),
            retrieved_docs=list(state.documents),
            cache_hit=False,
            retry_count=state.retry_count,
            analysis=state.analysis,
            decision=state.decision,
            grade=state.grade,
            error=state.error,
            error_kind=state.error_kind,
            total_duration_ms=state.total_duration_ms,
        )


def _route_after_fan_out(state: AgentState) -> str:
    if state.decision is not None and state.decision.action != "tool_call":
        return "generate"
    return "grade"


def _route_after_grade(state: AgentState) -> str:
    if state.grade is not None and state.grade.should_rewrite:
        return "rewrite"
    return "generate"


def _route_after_rewrite(state: AgentState) -> str:
    return "generate" if state.rewrite_rejected else "retrieve"


async def _no_retrieval() -> tuple[None, None]:
    return None, None


async def _notify(observer: StepObserver | None, step: NodeExecution) -> None:
    if observer is None:
        return
    outcome = observer(step)
    if inspect.isawaitable(outcome):
        await outcome

"""FastAPI entrypoint for document, query, session, trace and cache endpoints."""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from dataclasses import asdict
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from adaptive_rag.config import EngineConfig, QueryOptions, WindowConfig
from adaptive_rag.context.conversation import ConversationManager
from adaptive_rag.context.window import ContextWindowManager
from adaptive_rag.errors import AdaptiveRagError
from adaptive_rag.obs.tracing import TraceStore
from adaptive_rag.orchestrator.engine import RagEngine
from adaptive_rag.providers.base import CompletionProvider, EmbeddingProvider, SessionStore
from adaptive_rag.providers.hashing import HashingEmbedder
from adaptive_rag.providers.langchain import LangChainCompletionProvider, LangChainEmbeddingProvider
from adaptive_rag.providers.session_store import InMemorySessionStore, SqliteSessionStore
from adaptive_rag.providers.vector_store import InMemoryVectorStore
from adaptive_rag.types import CorrectionEvent, StreamEvent

CORRECTION_WAIT_SECONDS = 3.0


def _create_llm() -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)


def _create_embedder() -> EmbeddingProvider:
    if not os.getenv("OPENAI_API_KEY"):
        return HashingEmbedder()

    from langchain_openai import OpenAIEmbeddings

    model = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    dimension = int(os.getenv("ADAPTIVE_RAG_EMBEDDING_DIMENSION", "1536"))
    return LangChainEmbeddingProvider(
        OpenAIEmbeddings(model=model, dimensions=dimension), dimension=dimension
    )


def _create_session_store() -> SessionStore:
    db_path = os.getenv("ADAPTIVE_RAG_SESSION_DB")
    if db_path:
        return SqliteSessionStore(db_path)
    return InMemorySessionStore()


class DocumentItem(BaseModel):
    id: str | None = None
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentsRequest(BaseModel):
    documents: list[DocumentItem] = Field(min_length=1)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    options: QueryOptions = Field(default_factory=QueryOptions)
    session_id: str | None = None


class SessionCreateRequest(BaseModel):
    user_id: str | None = None
    session_id: str | None = None
    system_prompt: str | None = None


class SessionMessageRequest(BaseModel):
    query: str = Field(min_length=1)
    options: QueryOptions = Field(default_factory=QueryOptions)


app = FastAPI(title="Adaptive RAG Engine", version="0.1.0")

_llm = _create_llm()
_completion: CompletionProvider | None = (
    LangChainCompletionProvider(_llm) if _llm is not None else None
)
_embedder = _create_embedder()
_vector_store = InMemoryVectorStore(dimension=_embedder.dimension())
_trace_store = TraceStore()
_engine = RagEngine(
    vector_store=_vector_store,
    embedder=_embedder,
    completion=_completion,
    config=EngineConfig(),
    trace_store=_trace_store,
)
_conversations = ConversationManager(
    _engine,
    _create_session_store(),
    ContextWindowManager(WindowConfig(), summarizer=_completion, rewriter=_completion),
)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "llm_configured": _llm is not None,
        "engine_mode": "langchain" if _completion is not None else "deterministic",
        "embedding_dimension": _embedder.dimension(),
        "document_count": len(_vector_store),
        "trace_count": len(_trace_store),
    }


@app.post("/documents")
async def add_documents(request: DocumentsRequest) -> dict[str, Any]:
    items = [
        (item.id or f"doc-{uuid.uuid4().hex[:12]}", item.content, item.metadata)
        for item in request.documents
    ]
    try:
        ids = await _vector_store.add_texts(_embedder, items)
    except AdaptiveRagError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"documents_added": len(ids), "document_ids": ids}


@app.post("/query")
async def query(request: QueryRequest) -> dict[str, Any]:
    if request.session_id:
        outcome = await _conversations.process_turn(
            request.session_id, request.query, request.options
        )
        return {
            **outcome.result.to_dict(),
            "session_id": outcome.session.session_id,
            "resolved_query": outcome.resolved_query,
            "context_steps": [asdict(step) for step in outcome.context_steps],
        }
    result = await _engine.query(request.query, request.options)
    return result.to_dict()


@app.post("/query/stream")
async def query_stream(request: QueryRequest) -> StreamingResponse:
    return StreamingResponse(
        _sse_events(request.query, request.options, request.session_id),
        media_type="text/event-stream",
    )


async def _sse_events(
    query_text: str, options: QueryOptions, session_id: str | None
) -> AsyncIterator[str]:
    corrections: asyncio.Queue[CorrectionEvent] = asyncio.Queue()

    if session_id:
        events = _conversations.stream_turn(
            session_id, query_text, options, on_correction=corrections.put_nowait
        )
    else:
        events = _engine.stream_query(query_text, options, on_correction=corrections.put_nowait)

    generated = False
    async for event in events:
        if event.type == "done":
            generated = not event.data.get("cache_hit") and not event.data.get("error")
        yield _format_sse(event)

    # Give post-hoc verification a short window to amend the streamed answer.
    if generated and _engine.verifier.can_correct:
        try:
            correction = await asyncio.wait_for(corrections.get(), timeout=CORRECTION_WAIT_SECONDS)
        except asyncio.TimeoutError:
            return
        yield _format_sse(StreamEvent(type="correction", data=asdict(correction)))


def _format_sse(event: StreamEvent) -> str:
    payload = json.dumps({"type": event.type, "data": event.data}, ensure_ascii=False, default=str)
    return f"data: {payload}\n\n"


@app.post("/sessions")
async def create_session(request: SessionCreateRequest) -> dict[str, Any]:
    session = await _conversations.create_session(
        user_id=request.user_id,
        session_id=request.session_id,
        system_prompt=request.system_prompt,
    )
    return session.to_dict()


@app.get("/sessions")
async def list_sessions() -> dict[str, Any]:
    sessions = await _conversations.list_sessions()
    return {"items": sessions, "count": len(sessions)}


@app.get("/sessions/{session_id}")
async def get_session(session_id: str) -> dict[str, Any]:
    try:
        session = await _conversations.get_session(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {**session.to_dict(), "token_stats": ConversationManager.token_stats(session)}


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str) -> dict[str, Any]:
    if not await _conversations.delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return {"deleted": session_id}


@app.post("/sessions/{session_id}/messages")
async def session_message(session_id: str, request: SessionMessageRequest) -> dict[str, Any]:
    outcome = await _conversations.process_turn(session_id, request.query, request.options)
    return {
        **outcome.result.to_dict(),
        "session_id": outcome.session.session_id,
        "resolved_query": outcome.resolved_query,
        "context_steps": [asdict(step) for step in outcome.context_steps],
    }


@app.post("/sessions/{session_id}/compress")
async def compress_session(session_id: str) -> dict[str, Any]:
    try:
        outcome = await _conversations.compress(session_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "compressed": outcome.compressed,
        "compressed_count": outcome.compressed_count,
        "summarized_rounds": outcome.summarized_rounds,
        "reason": outcome.reason,
    }


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    records = [asdict(record) for record in _trace_store.list_recent(limit=limit)]
    return {"items": records}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return {**_trace_store.summary(), "cache": _engine.cache.stats()}


@app.get("/cache")
def cache_stats() -> dict[str, Any]:
    return _engine.cache.stats()


@app.delete("/cache")
def clear_cache() -> dict[str, Any]:
    return {"cleared": _engine.cache.clear()}

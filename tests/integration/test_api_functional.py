import json

import pytest
from fastapi.testclient import TestClient


def test_api_documents_query_sessions_traces_metrics(monkeypatch: pytest.MonkeyPatch) -> None:
    # Import after environment setup to use the deterministic engine.
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ADAPTIVE_RAG_SESSION_DB", raising=False)
    from adaptive_rag.api.main import app

    with TestClient(app) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["engine_mode"] == "deterministic"

        docs_resp = client.post(
            "/documents",
            json={
                "documents": [
                    {
                        "id": "policy",
                        "content": "Employees must encrypt customer data at rest.",
                        "metadata": {"source": "policy"},
                    },
                    {"content": "The cafeteria serves lunch from noon."},
                ]
            },
        )
        assert docs_resp.status_code == 200
        assert docs_resp.json()["documents_added"] == 2
        assert docs_resp.json()["document_ids"][0] == "policy"

        query_resp = client.post(
            "/query",
            json={
                "query": "Employees must encrypt customer data at rest?",
                "options": {"similarity_threshold": 0.5},
            },
        )
        assert query_resp.status_code == 200
        payload = query_resp.json()
        assert payload["retrieved_docs"][0]["id"] == "policy"
        assert "[policy]" in payload["answer"]
        assert payload["cache_hit"] is False
        assert [step["name"] for step in payload["trace"]][0] == "cache_check"

        cached_resp = client.post(
            "/query", json={"query": "Employees must encrypt customer data at rest?"}
        )
        assert cached_resp.json()["cache_hit"] is True

        trace_resp = client.get(f"/traces/{payload['trace_id']}")
        assert trace_resp.status_code == 200
        assert trace_resp.json()["retrieved_ids"][0] == "policy"
        assert client.get("/traces/unknown").status_code == 404

        metrics = client.get("/metrics").json()
        assert metrics["total_requests"] >= 2
        assert metrics["cache"]["hits"] >= 1

        session = client.post("/sessions", json={"user_id": "user-1"}).json()
        session_id = session["session_id"]
        turn = client.post(
            f"/sessions/{session_id}/messages",
            json={"query": "customer data encryption", "options": {"skip_semantic_cache": True}},
        )
        assert turn.status_code == 200
        assert turn.json()["session_id"] == session_id
        detail = client.get(f"/sessions/{session_id}").json()
        assert len(detail["messages"]) == 2
        assert detail["token_stats"]["conversation_messages"] == 2
        listed = client.get("/sessions").json()
        assert session_id in [item["session_id"] for item in listed["items"]]
        assert listed["count"] == len(listed["items"])

        assert client.delete(f"/sessions/{session_id}").status_code == 200
        assert client.get(f"/sessions/{session_id}").status_code == 404
        assert client.delete(f"/sessions/{session_id}").status_code == 404

        assert client.delete("/cache").json()["cleared"] >= 1
        assert client.get("/cache").json()["size"] == 0


def test_api_stream_emits_sse_events(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    from adaptive_rag.api.main import app

    with TestClient(app) as client:
        response = client.post(
            "/query/stream",
            json={"query": "How is lunch served?", "options": {"skip_semantic_cache": True}},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]
    assert events[0]["type"] == "workflow"
    assert events[-1]["type"] == "done"
    assert any(event["type"] == "token" for event in events)


def test_api_rejects_invalid_options(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    from adaptive_rag.api.main import app

    with TestClient(app) as client:
        response = client.post("/query", json={"query": "anything", "options": {"top_k": 0}})

    assert response.status_code == 422

"""Collaborator contracts consumed by the engine."""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

from adaptive_rag.types import Session


class EmbeddingProvider(Protocol):
    """Turns text into a fixed-length vector."""

    async def embed(self, text: str) -> list[float]:
        """Embed one text."""

    def dimension(self) -> int:
        """Length of the vectors returned by `embed`."""


class CompletionProvider(Protocol):
    """Turns a prompt into generated text."""

    async def complete(self, prompt: str, temperature: float = 0.0) -> str:
        """Generate the full completion."""

    def stream(self, prompt: str, temperature: float = 0.0) -> AsyncIterator[str]:
        """Yield completion chunks as they are produced."""


class VectorStore(Protocol):
    """Nearest-neighbor search over stored document vectors."""

    async def search(
        self, vector: list[float], top_k: int, threshold: float
    ) -> list[dict[str, Any]]:
        """Return `{id, content, metadata, score}` hits above `threshold`, best first."""

    async def stats(self) -> dict[str, Any]:
        """Return at least `{"vector_dimension": int}`."""


class SessionStore(Protocol):
    """Session persistence used by the conversation layer."""

    async def load(self, session_id: str) -> Session | None:
        """Return the stored session or None."""

    async def save(self, session: Session) -> None:
        """Insert or replace a session."""

    async def delete(self, session_id: str) -> bool:
        """Remove a session; return whether it existed."""

    async def list_ids(self) -> list[str]:
        """Ids of every stored session."""

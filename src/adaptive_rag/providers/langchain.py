"""Provider adapters over LangChain chat models and embeddings."""

from __future__ import annotations

from typing import Any, AsyncIterator

import openai
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel
from langchain_core.runnables import Runnable

from adaptive_rag.errors import CredentialsError, ProviderError

_AUTH_STATUS_CODES = frozenset({401, 403})


class LangChainCompletionProvider:
    """`CompletionProvider` backed by any LangChain chat model."""

    def __init__(self, model: BaseChatModel, *, bind_temperature: bool = True) -> None:
        self.model = model
        self.bind_temperature = bind_temperature

    async def complete(self, prompt: str, temperature: float = 0.0) -> str:
        try:
            message = await self._runnable(temperature).ainvoke(prompt)
        except Exception as exc:
            raise provider_error(exc, "completion") from exc
        return message_text(message.content)

    async def stream(self, prompt: str, temperature: float = 0.0) -> AsyncIterator[str]:
        try:
            async for chunk in self._runnable(temperature).astream(prompt):
                text = message_text(chunk.content)
                if text:
                    yield text
        except Exception as exc:
            raise provider_error(exc, "streaming completion") from exc

    def _runnable(self, temperature: float) -> Runnable[Any, Any]:
        if self.bind_temperature:
            return self.model.bind(temperature=temperature)
        return self.model


class LangChainEmbeddingProvider:
    """`EmbeddingProvider` backed by a LangChain `Embeddings` implementation."""

    def __init__(self, embeddings: Embeddings, dimension: int) -> None:
        self.embeddings = embeddings
        self._dimension = dimension

    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        try:
            vector = await self.embeddings.aembed_query(text)
        except Exception as exc:
            raise provider_error(exc, "embedding") from exc
        return [float(value) for value in vector]


def message_text(content: Any) -> str:
    """Flatten LangChain message content (plain string or list of content blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return str(content)


def provider_error(exc: Exception, action: str) -> ProviderError | CredentialsError:
    """Classify a provider exception: rejected credentials are terminal, the rest degrade."""
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return CredentialsError(f"{action} rejected the provider credentials: {exc}")
    if _status_code(exc) in _AUTH_STATUS_CODES:
        return CredentialsError(f"{action} rejected the provider credentials: {exc}")
    return ProviderError(f"{action} failed: {exc}")


def _status_code(exc: Exception) -> int | None:
    code = getattr(exc, "status_code", None)
    if code is None:
        code = getattr(getattr(exc, "response", None), "status_code", None)
    return code if isinstance(code, int) else None

"""Error taxonomy for the engine."""

from __future__ import annotations


class AdaptiveRagError(Exception):
    """Base class for engine errors."""


class ProviderError(AdaptiveRagError):
    """An embedding, completion or vector-store call failed."""


class MalformedOutputError(AdaptiveRagError):
    """A judge, rewrite or analysis model returned output that cannot be parsed."""


class ConfigurationError(AdaptiveRagError):
    """Unrecoverable setup problem; terminal for the current turn."""


class CredentialsError(ConfigurationError):
    """A provider rejected the configured credentials (HTTP 401/403)."""


class DimensionMismatchError(ConfigurationError):
    """No available embedding model produces vectors of the store's dimension."""

    def __init__(self, expected: int, available: list[int]) -> None:
        self.expected = expected
        self.available = available
        super().__init__(
            f"Vector store expects {expected}-dimensional vectors; "
            f"available embedding dimensions: {available or 'none'}"
        )


class GraphRecursionError(AdaptiveRagError):
    """The state machine exceeded its node-visit budget."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Recursion limit of {limit} node visits reached without hitting END")

"""Adaptive retrieval-augmented generation engine."""

from .config import EngineConfig, QueryOptions, RetrievalConfig, WindowConfig
from .orchestrator.engine import RagEngine

__all__ = ["EngineConfig", "QueryOptions", "RagEngine", "RetrievalConfig", "WindowConfig"]

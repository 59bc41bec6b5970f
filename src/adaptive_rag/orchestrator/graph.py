"""Explicit finite-state-machine executor for orchestration graphs."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from adaptive_rag.errors import GraphRecursionError
from adaptive_rag.orchestrator.state import AgentState, apply_patch
from adaptive_rag.types import NodeExecution

logger = logging.getLogger(__name__)

END = "__end__"

NodeHandler = Callable[[AgentState], Awaitable[dict[str, Any]]]
Router = Callable[[AgentState], str]
StepObserver = Callable[[NodeExecution], Any]


@dataclass(slots=True)
class _ConditionalEdge:
    router: Router
    path_map: dict[str, str] | None


class StateGraph:
    """Builder for a graph of named async nodes joined by plain and conditional edges.

    Each node returns a partial state patch which is merged with `apply_patch`.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, NodeHandler] = {}
        self._edges: dict[str, str] = {}
        self._conditional: dict[str, _ConditionalEdge] = {}
        self._entry: str | None = None

    def add_node(self, name: str, handler: NodeHandler) -> None:
        if name == END:
            raise ValueError(f"{END} is reserved")
        if name in self._nodes:
            raise ValueError(f"Node already registered: {name}")
        self._nodes[name] = handler

    def add_edge(self, source: str, target: str) -> None:
        if source in self._conditional:
            raise ValueError(f"Node {source} already has conditional edges")
        self._edges[source] = target

    def add_conditional_edges(
        self,
        source: str,
        router: Router,
        path_map: dict[str, str] | None = None,
    ) -> None:
        if source in self._edges:
            raise ValueError(f"Node {source} already has a plain edge")
        self._conditional[source] = _ConditionalEdge(router=router, path_map=path_map)

    def set_entry_point(self, name: str) -> None:
        self._entry = name

    def compile(
        self, *, recursion_limit: int = 25, error_exit: str | None = None
    ) -> "CompiledGraph":
        if self._entry is None:
            raise ValueError("Entry point is not set")
        targets = set(self._edges.values())
        for edge in self._conditional.values():
            targets.update((edge.path_map or {}).values())
        unknown = {
            name
            for name in targets | {self._entry} | ({error_exit} if error_exit else set())
            if name != END and name not in self._nodes
        }
        if unknown:
            raise ValueError(f"Edges point at unknown nodes: {sorted(unknown)}")
        for name in self._nodes:
            if name not in self._edges and name not in self._conditional:
                raise ValueError(f"Node {name} has no outgoing edge")
        return CompiledGraph(
            nodes=dict(self._nodes),
            edges=dict(self._edges),
            conditional=dict(self._conditional),
            entry=self._entry,
            recursion_limit=recursion_limit,
            error_exit=error_exit,
        )


class CompiledGraph:
    """Runs a compiled graph against one `AgentState`.

    `recursion_limit` bounds the number of node visits per run. When a node sets
    `state.error` (a terminal, non-recoverable failure) execution jumps straight
    to `error_exit`; a state that arrives with `error` already set starts there.
    """

    def __init__(
        self,
        *,
        nodes: dict[str, NodeHandler],
        edges: dict[str, str],
        conditional: dict[str, _ConditionalEdge],
        entry: str,
        recursion_limit: int,
        error_exit: str | None,
    ) -> None:
        self._nodes = nodes
        self._edges = edges
        self._conditional = conditional
        self._entry = entry
        self.recursion_limit = recursion_limit
        self.error_exit = error_exit

    async def ainvoke(
        self, state: AgentState, *, on_step: StepObserver | None = None
    ) -> AgentState:
        current = self._entry
        if state.error is not None and self.error_exit:
            current = self.error_exit
        visits = 0
        while current != END:
            visits += 1
            if visits > self.recursion_limit:
                raise GraphRecursionError(self.recursion_limit)

            before = len(state.trace)
            patch = await self._nodes[current](state)
            apply_patch(state, patch)
            if on_step is not None:
                for step in state.trace[before:]:
                    outcome = on_step(step)
                    if inspect.isawaitable(outcome):
                        await outcome

            current = self._next(current, state)
            logger.debug("turn %s: next node %s", state.trace_id, current)
        return state

    def _next(self, current: str, state: AgentState) -> str:
        if state.error is not None and self.error_exit and current != self.error_exit:
            return self.error_exit
        if current in self._conditional:
            edge = self._conditional[current]
            key = edge.router(state)
            if edge.path_map is None:
                return key
            if key not in edge.path_map:
                raise KeyError(f"Router for {current} returned unknown branch: {key}")
            return edge.path_map[key]
        return self._edges[current]

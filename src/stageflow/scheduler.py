"""Dependency graphs over batch tasks and their execution waves."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from stageflow.errors import DependencyGraphInvalid
from stageflow.models import Task

logger = logging.getLogger(__name__)

_DEPENDENCY_CLAUSE_RE = re.compile(
    r"\b(?:depends\s+on|after|needs|requires|blocked\s+by|builds\s+on|once)\b([^.;\n]*)",
    re.IGNORECASE,
)

WHITE, GRAY, BLACK = 0, 1, 2


def infer_dependencies(tasks: Iterable[Task]) -> dict[str, set[str]]:
    """Find dependencies stated in prose, e.g. "needs the module task A produces".

    Other tasks are matched by exact id (case-sensitive, whole word) or by
    title inside a dependency clause.
    """

    task_list = list(tasks)
    inferred: dict[str, set[str]] = {task.id: set() for task in task_list}
    for task in task_list:
        for clause_match in _DEPENDENCY_CLAUSE_RE.finditer(task.text):
            clause = clause_match.group(1)
            for other in task_list:
                if other.id == task.id:
                    continue
                if re.search(rf"(?<![\w.-]){re.escape(other.id)}(?![\w-])", clause):
                    inferred[task.id].add(other.id)
                elif len(other.title) >= 4 and other.title.lower() in clause.lower():
                    inferred[task.id].add(other.id)
    return inferred


@dataclass(slots=True)
class TaskGraph:
    """Acyclic ordering graph; an edge ``(a, b)`` means ``a`` must finish before ``b``."""

    nodes: dict[str, Task]
    edges: set[tuple[str, str]] = field(default_factory=set)

    @classmethod
    def build(
        cls,
        tasks: Iterable[Task],
        *,
        extra_dependencies: Mapping[str, Iterable[str]] | None = None,
    ) -> TaskGraph:
        nodes: dict[str, Task] = {}
        for task in tasks:
            if task.id in nodes:
                raise DependencyGraphInvalid(unknown_refs=[(task.id, f"duplicate id {task.id}")])
            nodes[task.id] = task

        unknown: list[tuple[str, str]] = []
        edges: set[tuple[str, str]] = set()
        for task in nodes.values():
            declared = set(task.depends_on)
            declared.update((extra_dependencies or {}).get(task.id, ()))
            for dependency in declared:
                if dependency not in nodes:
                    unknown.append((task.id, dependency))
                    continue
                edges.add((dependency, task.id))
        if unknown:
            raise DependencyGraphInvalid(unknown_refs=unknown)

        graph = cls(nodes=nodes, edges=edges)
        graph.validate()
        return graph

    def predecessors(self, task_id: str) -> set[str]:
        return {src for src, dst in self.edges if dst == task_id}

    def successors(self, task_id: str) -> set[str]:
        return {dst for src, dst in self.edges if src == task_id}

    def _adjacency(self) -> dict[str, list[str]]:
        adjacency: dict[str, list[str]] = {node: [] for node in self.nodes}
        for src, dst in sorted(self.edges):
            adjacency[src].append(dst)
        return adjacency

    def find_cycle_edges(self) -> set[tuple[str, str]]:
        """Edges lying on a cycle, found by depth-first coloring."""

        adjacency = self._adjacency()
        color = {node: WHITE for node in self.nodes}
        stack: list[str] = []
        cycle_edges: set[tuple[str, str]] = set()

        def visit(node: str) -> None:
            color[node] = GRAY
            stack.append(node)
            for nxt in adjacency[node]:
                if color[nxt] == WHITE:
                    visit(nxt)
                elif color[nxt] == GRAY:
                    path = stack[stack.index(nxt):]
                    cycle_edges.update(zip(path, path[1:] + [nxt]))
            stack.pop()
            color[node] = BLACK

        for node in sorted(self.nodes):
            if color[node] == WHITE:
                visit(node)
        return cycle_edges

    def validate(self) -> None:
        cycle_edges = self.find_cycle_edges()
        if cycle_edges:
            raise DependencyGraphInvalid(cycle_edges=cycle_edges)

    def waves(self) -> list[list[str]]:
        """Kahn's algorithm; each wave is the full ready set at that point."""

        self.validate()
        indegree = {node: 0 for node in self.nodes}
        for _, dst in self.edges:
            indegree[dst] += 1
        adjacency = self._adjacency()
        ready = sorted(node for node, degree in indegree.items() if degree == 0)
        waves: list[list[str]] = []
        while ready:
            waves.append(ready)
            next_ready: list[str] = []
            for node in ready:
                for nxt in adjacency[node]:
                    indegree[nxt] -= 1
                    if indegree[nxt] == 0:
                        next_ready.append(nxt)
            ready = sorted(next_ready)
        logger.debug("Computed %d waves over %d tasks", len(waves), len(self.nodes))
        return waves

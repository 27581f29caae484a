"""Task dependency graph construction and validation.

This module implements dependency management for a task set:
1. Edge discovery from each task's declared dependencies()
2. Dangling reference detection (fail fast, naming the missing identity)
3. Cycle detection with the full cycle path for diagnosis
4. Topological ordering with ties broken by stable input order

Cycles must be caught here: at execution time they only show up as tasks
that never become ready.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .model import InputError, Task, TaskId
from .taskset import TaskSet

logger = logging.getLogger(__name__)


class CyclicDependencyError(InputError):
    """Raised when a dependency cycle is detected.

    Attributes:
        cycle: Path whose first and last element are the same task; each
            consecutive pair is a dependent -> dependency edge.
    """

    def __init__(self, cycle: list[TaskId]) -> None:
        self.cycle = cycle
        path = " -> ".join(str(task_id) for task_id in cycle)
        super().__init__(f"Circular dependency detected: {path}")


class DanglingReferenceError(InputError):
    """Raised when a task depends on an identity that is not in the set."""

    def __init__(self, task_id: TaskId, referenced_by: TaskId) -> None:
        self.task_id = task_id
        self.referenced_by = referenced_by
        super().__init__(
            f"{referenced_by} references {task_id.kind} '{task_id.name}', which is not defined"
        )


class _Color(Enum):
    WHITE = 0  # Not visited
    GRAY = 1  # On the current DFS path
    BLACK = 2  # Fully explored


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    task_id: TaskId
    order: int
    depends_on: list[TaskId] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of tasks; edges point from dependent to dependency."""

    nodes: dict[TaskId, DependencyNode] = field(default_factory=dict)
    tasks: dict[TaskId, Task] = field(default_factory=dict)

    def add_node(
        self,
        task_id: TaskId,
        depends_on: list[TaskId] | None = None,
        task: Task | None = None,
    ) -> None:
        """Add a node to the dependency graph.

        Args:
            task_id: Identity of the task.
            depends_on: Identities this task depends on.
            task: The task definition, when known.
        """
        node = self.nodes.get(task_id)
        if node is None:
            node = DependencyNode(task_id=task_id, order=len(self.nodes))
            self.nodes[task_id] = node
        for dep in depends_on or []:
            if dep not in node.depends_on:
                node.depends_on.append(dep)
        if task is not None:
            self.tasks[task_id] = task

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    def __iter__(self) -> Iterator[TaskId]:
        return iter(self.nodes)

    def task(self, task_id: TaskId) -> Task:
        return self.tasks[task_id]

    def dependencies_of(self, task_id: TaskId) -> list[TaskId]:
        return list(self.nodes[task_id].depends_on)

    def dependents_of(self, task_id: TaskId) -> list[TaskId]:
        """Tasks that directly depend on task_id, in input order."""
        return [node.task_id for node in self.nodes.values() if task_id in node.depends_on]

    def dependents_map(self) -> dict[TaskId, list[TaskId]]:
        """Reverse adjacency: task -> direct dependents, in input order."""
        dependents: dict[TaskId, list[TaskId]] = {task_id: [] for task_id in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.task_id)
        return dependents

    def roots(self) -> list[TaskId]:
        """Tasks with no dependencies, in input order."""
        return [node.task_id for node in self.nodes.values() if not node.depends_on]

    def find_cycle(self) -> list[TaskId] | None:
        """Find one dependency cycle using DFS colouring.

        Returns:
            The cycle path (first element repeated at the end), or None.
        """
        color = {task_id: _Color.WHITE for task_id in self.nodes}

        for start in self.nodes:
            if color[start] != _Color.WHITE:
                continue

            # Iterative DFS; each frame holds a node and its next edge index
            path: list[TaskId] = [start]
            edge_index: list[int] = [0]
            color[start] = _Color.GRAY

            while path:
                current = path[-1]
                deps = self.nodes[current].depends_on
                index = edge_index[-1]

                if index >= len(deps):
                    color[current] = _Color.BLACK
                    path.pop()
                    edge_index.pop()
                    continue

                edge_index[-1] = index + 1
                dep = deps[index]
                if dep not in color:
                    continue
                if color[dep] == _Color.GRAY:
                    return path[path.index(dep):] + [dep]
                if color[dep] == _Color.WHITE:
                    color[dep] = _Color.GRAY
                    path.append(dep)
                    edge_index.append(0)

        return None

    def validate(self) -> None:
        """Validate the dependency graph for dangling edges and cycles.

        Raises:
            DanglingReferenceError: If an edge points outside the graph.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise DanglingReferenceError(dep, referenced_by=node.task_id)

        cycle = self.find_cycle()
        if cycle is not None:
            raise CyclicDependencyError(cycle)

    def topological_sort(self) -> list[TaskId]:
        """Return tasks in dependency order (dependencies first).

        Among tasks that are ready at the same time, input order wins.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents = self.dependents_map()
        in_degree = {task_id: len(node.depends_on) for task_id, node in self.nodes.items()}

        # Kahn's algorithm with a heap keyed on input order
        heap = [(node.order, task_id) for task_id, node in self.nodes.items() if not node.depends_on]
        heapq.heapify(heap)
        result: list[TaskId] = []

        while heap:
            _, current = heapq.heappop(heap)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self.nodes[dependent].order, dependent))

        return result

    def get_ready(self, satisfied: set[TaskId]) -> list[TaskId]:
        """Get tasks that are ready to run (all deps satisfied), in input order."""
        return [
            node.task_id
            for node in self.nodes.values()
            if node.task_id not in satisfied and all(dep in satisfied for dep in node.depends_on)
        ]


def build_graph(task_set: TaskSet) -> DependencyGraph:
    """Assemble a validated dependency graph from a resolved task set.

    Raises:
        DanglingReferenceError: If a task references an undefined identity.
        CyclicDependencyError: If the references form a cycle.
    """
    graph = DependencyGraph()

    for task in task_set:
        task_id = task.id
        deps: list[TaskId] = []
        # references() keeps field order, which keeps edge order reproducible
        for ref in task.references():
            if ref.id not in task_set:
                raise DanglingReferenceError(ref.id, referenced_by=task_id)
            if ref.id not in deps:
                deps.append(ref.id)
        missing = task.dependencies() - set(deps)
        for dep in sorted(missing):
            if dep not in task_set:
                raise DanglingReferenceError(dep, referenced_by=task_id)
            deps.append(dep)
        graph.add_node(task_id, deps, task=task)

    graph.validate()

    logger.info(
        "Dependency graph built",
        extra={
            "tasks": len(graph),
            "edges": sum(len(node.depends_on) for node in graph.nodes.values()),
            "roots": len(graph.roots()),
        },
    )
    return graph

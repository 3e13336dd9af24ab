"""Dependency graph construction, cycle detection, and critical-path timing."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from taskplan.errors import CircularDependencyError, DuplicateTaskError, UnknownDependencyError
from taskplan.models import Task

logger = logging.getLogger(__name__)

_WHITE = 0
_GRAY = 1
_BLACK = 2


@dataclass(slots=True)
class DependencyGraph:
    """Validated DAG over task ids; edges run dependency -> dependent."""

    dependencies: dict[str, tuple[str, ...]]
    dependents: dict[str, tuple[str, ...]]
    topological_order: tuple[str, ...]
    longest_path_seconds: dict[str, float]
    critical_path: tuple[str, ...]
    critical_path_seconds: float

    def sinks(self) -> tuple[str, ...]:
        """Tasks nothing depends on, in topological order."""

        return tuple(task_id for task_id in self.topological_order if not self.dependents[task_id])

    def transitive_dependents(self, task_id: str) -> set[str]:
        found: set[str] = set()
        frontier = list(self.dependents[task_id])
        while frontier:
            current = frontier.pop()
            if current in found:
                continue
            found.add(current)
            frontier.extend(self.dependents[current])
        return found

    def remaining_path_seconds(self, estimates: dict[str, float]) -> dict[str, float]:
        """Longest chain of estimates from each task to any sink, task included."""

        remaining: dict[str, float] = {}
        for task_id in reversed(self.topological_order):
            tail = max((remaining[child] for child in self.dependents[task_id]), default=0.0)
            remaining[task_id] = tail + estimates[task_id]
        return remaining


def build_dependency_graph(tasks: Iterable[Task]) -> DependencyGraph:
    """Build a DAG from tasks, failing on cycles, duplicates and dangling ids.

    The walk is an iterative three-color depth-first search over dependency
    edges, so the post-order it emits is already a topological order (every task
    appears after all of its dependencies).
    """

    estimates: dict[str, float] = {}
    dependencies: dict[str, tuple[str, ...]] = {}
    for task in tasks:
        if task.task_id in dependencies:
            raise DuplicateTaskError(task_id=task.task_id)
        dependencies[task.task_id] = task.dependencies
        estimates[task.task_id] = task.estimated_seconds

    dependents_lists: dict[str, list[str]] = {task_id: [] for task_id in dependencies}
    for task_id, deps in dependencies.items():
        for dep in deps:
            if dep not in dependencies:
                raise UnknownDependencyError(task_id=task_id, dependency_id=dep)
            dependents_lists[dep].append(task_id)

    order = _topological_order(dependencies)

    longest: dict[str, float] = {}
    predecessor: dict[str, str | None] = {}
    for task_id in order:
        best_dep: str | None = None
        best_time = 0.0
        for dep in dependencies[task_id]:
            if best_dep is None or longest[dep] > best_time:
                best_dep = dep
                best_time = longest[dep]
        longest[task_id] = best_time + estimates[task_id]
        predecessor[task_id] = best_dep

    dependents = {task_id: tuple(children) for task_id, children in dependents_lists.items()}
    sinks = [task_id for task_id in order if not dependents[task_id]]
    critical_path: list[str] = []
    critical_seconds = 0.0
    if sinks:
        tail = max(sinks, key=lambda task_id: longest[task_id])
        critical_seconds = longest[tail]
        cursor: str | None = tail
        while cursor is not None:
            critical_path.append(cursor)
            cursor = predecessor[cursor]
        critical_path.reverse()

    logger.debug(
        "Dependency graph built: tasks=%d sinks=%d critical_path=%.1fs",
        len(order),
        len(sinks),
        critical_seconds,
    )
    return DependencyGraph(
        dependencies=dependencies,
        dependents=dependents,
        topological_order=tuple(order),
        longest_path_seconds=longest,
        critical_path=tuple(critical_path),
        critical_path_seconds=critical_seconds,
    )


def _topological_order(dependencies: dict[str, tuple[str, ...]]) -> list[str]:
    color = dict.fromkeys(dependencies, _WHITE)
    order: list[str] = []
    for root in dependencies:
        if color[root] != _WHITE:
            continue
        color[root] = _GRAY
        stack = [(root, iter(dependencies[root]))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                color[node] = _BLACK
                order.append(node)
                continue
            if color[child] == _GRAY:
                path = [entry for entry, _ in stack]
                cycle = (*path[path.index(child) :], child)
                raise CircularDependencyError(task_id=child, cycle=cycle)
            if color[child] == _WHITE:
                color[child] = _GRAY
                stack.append((child, iter(dependencies[child])))
    return order

"""Parallel batch scheduling within a phase."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from taskplan.errors import DependencyUnsatisfiedError
from taskplan.models import ExecutionPlan, Phase


def partition_batches(
    task_ids: Sequence[str],
    dependencies: Mapping[str, Sequence[str]],
    *,
    satisfied: Iterable[str] = (),
) -> list[tuple[str, ...]]:
    """Group tasks into sequential batches of mutually independent tasks.

    Each batch holds every not-yet-batched task whose dependencies are in
    `satisfied` or in an earlier batch. Input order is preserved inside a batch.
    A dependency that is neither satisfied nor part of `task_ids` can never be
    met and raises `DependencyUnsatisfiedError`.
    """

    done = set(satisfied)
    remaining = list(dict.fromkeys(task_ids))
    batches: list[tuple[str, ...]] = []
    while remaining:
        batch = tuple(
            task_id
            for task_id in remaining
            if all(dep in done for dep in dependencies[task_id])
        )
        if not batch:
            blocked = remaining[0]
            raise DependencyUnsatisfiedError(
                task_id=blocked,
                missing=tuple(dep for dep in dependencies[blocked] if dep not in done),
            )
        batches.append(batch)
        done.update(batch)
        batched = set(batch)
        remaining = [task_id for task_id in remaining if task_id not in batched]
    return batches


def schedule_phase(plan: ExecutionPlan, phase: Phase) -> list[tuple[str, ...]]:
    """Batches for the phase's unfinished tasks, highest priority first in each batch."""

    satisfied = [task.task_id for task in plan.tasks.values() if task.is_satisfied]
    open_ids = [task_id for task_id in phase.task_ids if not plan.task(task_id).is_satisfied]
    batches = partition_batches(open_ids, plan.graph.dependencies, satisfied=satisfied)
    return [_by_priority(plan, batch) for batch in batches]


def layout_phases(plan: ExecutionPlan) -> list[list[tuple[str, ...]]]:
    """Batches of every phase as built, ignoring task statuses.

    Earlier phases count as satisfied, so this is the layout a fresh run follows.
    """

    satisfied: list[str] = []
    layout: list[list[tuple[str, ...]]] = []
    for phase in plan.phases:
        batches = partition_batches(phase.task_ids, plan.graph.dependencies, satisfied=satisfied)
        layout.append([_by_priority(plan, batch) for batch in batches])
        satisfied.extend(phase.task_ids)
    return layout


def _by_priority(plan: ExecutionPlan, batch: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(
        sorted(batch, key=lambda task_id: (-plan.task(task_id).priority, plan.position(task_id))),
    )

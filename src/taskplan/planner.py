"""Plan builder: phases, checkpoints, estimates, and descriptive classification."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import Enum
from uuid import uuid4

from taskplan.engine.handlers import HandlerTable
from taskplan.graph import DependencyGraph, build_dependency_graph
from taskplan.models import Checkpoint, Context, ExecutionPlan, Phase, Task, TaskType
from taskplan.scheduler import partition_batches

logger = logging.getLogger(__name__)

DESTRUCTIVE_VERBS = frozenset({"delete", "remove", "drop", "truncate"})
MONETARY_TAGS = frozenset({"monetary", "payment", "billing"})
PRODUCTION_TAGS = frozenset({"production", "prod"})

SIMPLE_MAX_TASKS = 3
MEDIUM_MAX_TASKS = 10

_PHASE_THEMES: dict[TaskType, str] = {
    TaskType.FILESYSTEM: "scaffolding",
    TaskType.DATABASE: "data",
    TaskType.CODE_GENERATION: "implementation",
    TaskType.TOOL_CALL: "integration",
    TaskType.EXECUTION: "verification",
    TaskType.ANALYSIS: "analysis",
}


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def risk_reasons(task: Task) -> tuple[str, ...]:
    """Why a task is high-risk; empty when it is not."""

    reasons: list[str] = []
    verbs = set(re.split(r"[^a-z]+", task.action.lower()))
    destructive = sorted(verbs & DESTRUCTIVE_VERBS)
    if destructive:
        reasons.append(f"destructive action ({', '.join(destructive)})")
    tags = {tag.lower() for tag in task.tags}
    if tags & MONETARY_TAGS:
        reasons.append("monetary call")
    if "deploy" in task.action.lower() and tags & PRODUCTION_TAGS:
        reasons.append("production deployment")
    return tuple(reasons)


def classify_complexity(task_count: int) -> Complexity:
    if task_count <= SIMPLE_MAX_TASKS:
        return Complexity.SIMPLE
    if task_count <= MEDIUM_MAX_TASKS:
        return Complexity.MEDIUM
    return Complexity.COMPLEX


def classify_risk(tasks: Sequence[Task]) -> RiskLevel:
    if any(risk_reasons(task) for task in tasks):
        return RiskLevel.HIGH
    if len(tasks) > MEDIUM_MAX_TASKS:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


@dataclass(slots=True)
class _Layout:
    phases: list[list[str]]
    batches: list[list[tuple[str, ...]]]


class PlanBuilder:
    """Turns a validated task list into an ordered, checkpointed execution plan.

    Building is deterministic: the same tasks yield the same phases, ordering and
    checkpoint ids. Input tasks are copied; the plan owns its own Task objects.
    """

    def __init__(self, *, handlers: HandlerTable | None = None) -> None:
        self.handlers = handlers

    def build(
        self,
        tasks: Sequence[Task],
        *,
        context: Context,
        plan_id: str | None = None,
        request: str = "",
    ) -> ExecutionPlan:
        owned = [replace(task, parameters=dict(task.parameters)) for task in tasks]
        if self.handlers is not None:
            self.handlers.validate(owned)
        graph = build_dependency_graph(owned)
        by_id = {task.task_id: task for task in owned}
        input_index = {task.task_id: index for index, task in enumerate(owned)}

        remaining = graph.remaining_path_seconds(
            {task_id: task.estimated_seconds for task_id, task in by_id.items()},
        )
        for task_id, task in by_id.items():
            task.priority = round(remaining[task_id])

        layout = self._layout(graph, by_id, input_index)
        ordered_ids = [task_id for phase in layout.batches for batch in phase for task_id in batch]
        phases = [
            Phase(
                index=index,
                name=_phase_name(index, [by_id[task_id] for task_id in task_ids]),
                task_ids=tuple(
                    task_id for batch in layout.batches[index] for task_id in batch
                ),
                checkpoint=any(by_id[task_id].checkpoint for task_id in task_ids),
                estimated_seconds=sum(
                    max(by_id[task_id].estimated_seconds for task_id in batch)
                    for batch in layout.batches[index]
                ),
            )
            for index, task_ids in enumerate(layout.phases)
        ]
        checkpoints = self._checkpoints(phases, layout, by_id, ordered_ids)

        now = context.now()
        plan = ExecutionPlan(
            plan_id=plan_id or str(uuid4()),
            request=request,
            tasks={task_id: by_id[task_id] for task_id in ordered_ids},
            graph=graph,
            phases=phases,
            checkpoints=checkpoints,
            estimated_seconds=graph.critical_path_seconds,
            estimated_cost_usd=round(sum(task.estimated_cost_usd for task in owned), 6),
            complexity=classify_complexity(len(owned)).value,
            risk=classify_risk(owned).value,
            created_at=now,
            updated_at=now,
        )
        logger.info(
            "Plan %s built: tasks=%d phases=%d checkpoints=%d critical_path=%.1fs risk=%s",
            plan.plan_id,
            len(plan.tasks),
            len(phases),
            len(checkpoints),
            plan.estimated_seconds,
            plan.risk,
        )
        return plan

    def _layout(
        self,
        graph: DependencyGraph,
        by_id: dict[str, Task],
        input_index: dict[str, int],
    ) -> _Layout:
        level: dict[str, int] = {}
        for task_id in graph.topological_order:
            level[task_id] = max(
                (level[dep] + 1 for dep in graph.dependencies[task_id]),
                default=0,
            )
        phase_count = max(level.values(), default=-1) + 1
        phases: list[list[str]] = [[] for _ in range(phase_count)]
        for task_id in sorted(
            level,
            key=lambda item: (-by_id[item].priority, input_index[item]),
        ):
            phases[level[task_id]].append(task_id)

        batches: list[list[tuple[str, ...]]] = []
        satisfied: list[str] = []
        for task_ids in phases:
            phase_batches = partition_batches(task_ids, graph.dependencies, satisfied=satisfied)
            batches.append(phase_batches)
            satisfied.extend(task_ids)
        return _Layout(phases=phases, batches=batches)

    def _checkpoints(
        self,
        phases: list[Phase],
        layout: _Layout,
        by_id: dict[str, Task],
        ordered_ids: list[str],
    ) -> list[Checkpoint]:
        # after_task_id -> (phase index, reasons, questions)
        bound: dict[str, tuple[int, list[str], list[str]]] = {}

        for phase in phases:
            if not phase.checkpoint or not phase.task_ids:
                continue
            after_task_id = layout.batches[phase.index][-1][-1]
            questions = [
                question
                for task_id in phase.task_ids
                for question in by_id[task_id].checkpoint_questions
            ]
            _bind(bound, after_task_id, phase.index, f"end of {phase.name}", questions)

        global_batches = [
            (phase_index, batch)
            for phase_index, phase_batches in enumerate(layout.batches)
            for batch in phase_batches
        ]
        for batch_index, (_, batch) in enumerate(global_batches):
            if batch_index == 0:
                # Plan approval precedes the first batch.
                continue
            previous_phase, previous_batch = global_batches[batch_index - 1]
            for task_id in batch:
                reasons = risk_reasons(by_id[task_id])
                if not reasons:
                    continue
                _bind(
                    bound,
                    previous_batch[-1],
                    previous_phase,
                    f"before high-risk task {task_id}",
                    [f"Approve {task_id} ({'; '.join(reasons)})?"],
                )

        position = {task_id: index for index, task_id in enumerate(ordered_ids)}
        checkpoints: list[Checkpoint] = []
        for number, after_task_id in enumerate(sorted(bound, key=position.__getitem__), start=1):
            phase_index, reasons, questions = bound[after_task_id]
            checkpoints.append(
                Checkpoint(
                    checkpoint_id=f"cp-{number}",
                    name=f"After {by_id[after_task_id].name}",
                    after_task_id=after_task_id,
                    phase_index=phase_index,
                    reasons=tuple(reasons),
                    questions=tuple(dict.fromkeys(questions)),
                ),
            )
        return checkpoints


def _bind(
    bound: dict[str, tuple[int, list[str], list[str]]],
    after_task_id: str,
    phase_index: int,
    reason: str,
    questions: list[str],
) -> None:
    entry = bound.setdefault(after_task_id, (phase_index, [], []))
    if reason not in entry[1]:
        entry[1].append(reason)
    entry[2].extend(questions)


def _phase_name(index: int, tasks: list[Task]) -> str:
    counts = Counter(task.task_type for task in tasks)
    order = list(TaskType)
    dominant = min(counts, key=lambda task_type: (-counts[task_type], order.index(task_type)))
    return f"phase-{index + 1}-{_PHASE_THEMES[dominant]}"

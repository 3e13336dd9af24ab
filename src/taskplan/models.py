"""Domain models for tasks, execution plans, checkpoints, and runtime state."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from taskplan.errors import InvalidTransitionError, UnknownTaskTypeError
from taskplan.storage.common import utc_now

if TYPE_CHECKING:
    from taskplan.graph import DependencyGraph


class TaskType(str, Enum):
    """Closed set of task kinds; each kind is served by one registered handler."""

    CODE_GENERATION = "code_generation"
    FILESYSTEM = "filesystem"
    DATABASE = "database"
    EXECUTION = "execution"
    ANALYSIS = "analysis"
    TOOL_CALL = "tool_call"

    @classmethod
    def parse(cls, value: str, *, task_id: str) -> TaskType:
        """Parse a type tag, accepting `code-generation` and `code_generation` spellings."""

        normalized = value.strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError as error:
            raise UnknownTaskTypeError(task_id=task_id, task_type=value) from error


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    """Execution plan lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


SATISFIED_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})
TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED})
TERMINAL_PLAN_STATUSES = frozenset(
    {PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED},
)

# Regressions to PENDING from COMPLETED/SKIPPED go through Task.reset(), which only
# the recovery manager calls.
_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY, TaskStatus.SKIPPED}),
    TaskStatus.READY: frozenset({TaskStatus.EXECUTING, TaskStatus.PENDING, TaskStatus.SKIPPED}),
    TaskStatus.EXECUTING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.SKIPPED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
}

_PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.PENDING: frozenset({PlanStatus.APPROVED, PlanStatus.CANCELLED}),
    PlanStatus.APPROVED: frozenset({PlanStatus.EXECUTING, PlanStatus.CANCELLED}),
    PlanStatus.EXECUTING: frozenset(
        {PlanStatus.PAUSED, PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED},
    ),
    PlanStatus.PAUSED: frozenset({PlanStatus.EXECUTING, PlanStatus.CANCELLED}),
    PlanStatus.FAILED: frozenset({PlanStatus.EXECUTING, PlanStatus.PAUSED}),
    PlanStatus.COMPLETED: frozenset(),
    PlanStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class Context:
    """Immutable request context threaded through every engine call."""

    request_id: str
    actor_id: str = "system"
    clock: Callable[[], datetime] = utc_now
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def now(self) -> datetime:
        """Current time according to the injected clock."""

        return self.clock()

    def with_metadata(self, **values: Any) -> Context:
        """Return a copy with extra metadata entries."""

        return replace(self, metadata={**self.metadata, **values})


@dataclass(slots=True)
class Task:
    """Atomic unit of work owned by one execution plan.

    `dependencies` is an ordered set of task ids from the same plan. `priority` is
    computed by the plan builder from the remaining critical path.
    """

    task_id: str
    name: str
    task_type: TaskType
    action: str
    description: str = ""
    dependencies: tuple[str, ...] = ()
    estimated_seconds: float = 60.0
    timeout_seconds: float | None = None
    estimated_cost_usd: float = 0.0
    checkpoint: bool = False
    checkpoint_questions: tuple[str, ...] = ()
    retryable: bool = True
    max_retries: int = 3
    retry_count: int = 0
    priority: int = 0
    tags: tuple[str, ...] = ()
    parameters: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        self.dependencies = tuple(dict.fromkeys(self.dependencies))
        if self.estimated_seconds < 0:
            raise ValueError(f"Task {self.task_id!r} has negative estimated_seconds.")
        if self.max_retries < 0:
            raise ValueError(f"Task {self.task_id!r} has negative max_retries.")

    def transition(
        self,
        status: TaskStatus,
        *,
        at: datetime,
        error: str | None = None,
    ) -> None:
        """Move to `status`, stamping timestamps and the failure message."""

        if status not in _TASK_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                entity=f"task {self.task_id}",
                status_from=self.status.value,
                status_to=status.value,
            )
        if status == TaskStatus.EXECUTING:
            self.started_at = at
            self.completed_at = None
        elif status in TERMINAL_TASK_STATUSES:
            self.completed_at = at
        self.error = error if status == TaskStatus.FAILED else None
        self.status = status

    def reset(self) -> None:
        """Return to `pending` with timestamps, errors and retry count cleared."""

        self.status = TaskStatus.PENDING
        self.started_at = None
        self.completed_at = None
        self.error = None
        self.retry_count = 0

    @property
    def is_satisfied(self) -> bool:
        return self.status in SATISFIED_TASK_STATUSES


@dataclass(slots=True)
class TaskResult:
    """Recorded outcome of one completed task."""

    task_id: str
    output: dict[str, Any]
    duration_seconds: float
    attempts: int
    completed_at: datetime
    tool: str | None = None


@dataclass(slots=True)
class Phase:
    """Ordered slice of the plan's tasks sharing one dependency level."""

    index: int
    name: str
    task_ids: tuple[str, ...]
    checkpoint: bool
    estimated_seconds: float


@dataclass(slots=True)
class Checkpoint:
    """Pause point bound to the task after which execution stops."""

    checkpoint_id: str
    name: str
    after_task_id: str
    phase_index: int
    reasons: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()
    approved: bool | None = None
    feedback: str | None = None
    reached_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def resolved(self) -> bool:
        return self.approved is not None


@dataclass(slots=True)
class ExecutionState:
    """Mutable runtime record twinned 1:1 with an execution plan."""

    plan_id: str
    status: PlanStatus = PlanStatus.PENDING
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    pending_tasks: int = 0
    last_checkpoint_id: str | None = None
    recovery_attempts: int = 0
    can_resume: bool = False
    resume_from_task: str | None = None

    def refresh(self, plan: ExecutionPlan) -> None:
        """Recompute progress counters from the plan's task statuses."""

        counts = dict.fromkeys(TaskStatus, 0)
        for task in plan.tasks.values():
            counts[task.status] += 1
        self.status = plan.status
        self.total_tasks = len(plan.tasks)
        self.completed_tasks = counts[TaskStatus.COMPLETED]
        self.failed_tasks = counts[TaskStatus.FAILED]
        self.skipped_tasks = counts[TaskStatus.SKIPPED]
        self.pending_tasks = self.total_tasks - (
            self.completed_tasks + self.failed_tasks + self.skipped_tasks
        )


@dataclass(slots=True)
class ExecutionPlan:
    """Ordered, checkpointed collection of tasks for one request.

    `tasks` is the arena: insertion order is execution order (phase, then batch,
    then priority). Everything outside the plan refers to tasks by id.
    """

    plan_id: str
    request: str
    tasks: dict[str, Task]
    graph: DependencyGraph
    phases: list[Phase]
    checkpoints: list[Checkpoint]
    estimated_seconds: float
    estimated_cost_usd: float
    complexity: str
    risk: str
    created_at: datetime
    updated_at: datetime
    status: PlanStatus = PlanStatus.PENDING
    current_task_id: str | None = None
    completed_task_ids: list[str] = field(default_factory=list)
    results: dict[str, TaskResult] = field(default_factory=dict)
    state: ExecutionState = field(init=False)

    def __post_init__(self) -> None:
        self.state = ExecutionState(plan_id=self.plan_id)
        self.state.refresh(self)

    def task(self, task_id: str) -> Task:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise KeyError(f"Task not in plan {self.plan_id}: {task_id}") from None

    def position(self, task_id: str) -> int:
        """Index of a task in execution order."""

        for index, candidate in enumerate(self.tasks):
            if candidate == task_id:
                return index
        raise KeyError(f"Task not in plan {self.plan_id}: {task_id}")

    def checkpoint(self, checkpoint_id: str) -> Checkpoint:
        for checkpoint in self.checkpoints:
            if checkpoint.checkpoint_id == checkpoint_id:
                return checkpoint
        raise KeyError(f"Checkpoint not in plan {self.plan_id}: {checkpoint_id}")

    def transition(self, status: PlanStatus) -> None:
        """Move the plan (and its state twin) to `status`."""

        if status not in _PLAN_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                entity=f"plan {self.plan_id}",
                status_from=self.status.value,
                status_to=status.value,
            )
        self.status = status
        self.state.status = status

    def first_unsatisfied_task_id(self) -> str | None:
        for task in self.tasks.values():
            if not task.is_satisfied:
                return task.task_id
        return None

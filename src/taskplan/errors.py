"""Shared error types for the taskplan package.

Structural errors (cycles, unknown dependencies, unknown task types) are raised
while a plan is built and are never retried. Tool errors are routed through the
decision service by the orchestrator. Persistence errors are surfaced to the
operator as-is.
"""

from __future__ import annotations


class TaskplanError(Exception):
    """Base exception for taskplan errors.

    Use this for errors that should reach an operator with an actionable message.
    """


class CircularDependencyError(TaskplanError):
    """Task dependencies form a cycle; the plan cannot be built."""

    def __init__(self, *, task_id: str, cycle: tuple[str, ...]) -> None:
        self.task_id = task_id
        self.cycle = cycle
        super().__init__(
            f"Circular dependency detected at task {task_id!r}: {' -> '.join(cycle)}",
        )


class UnknownDependencyError(TaskplanError):
    """A task depends on an id that is not part of the same plan."""

    def __init__(self, *, task_id: str, dependency_id: str) -> None:
        self.task_id = task_id
        self.dependency_id = dependency_id
        super().__init__(f"Task {task_id!r} depends on unknown task {dependency_id!r}")


class DuplicateTaskError(TaskplanError):
    """Two tasks in one plan share an id."""

    def __init__(self, *, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Duplicate task id: {task_id!r}")


class UnknownTaskTypeError(TaskplanError):
    """Task type tag is not supported or has no registered handler."""

    def __init__(self, *, task_id: str, task_type: str) -> None:
        self.task_id = task_id
        self.task_type = task_type
        super().__init__(f"Unknown task type {task_type!r} for task {task_id!r}")


class DependencyUnsatisfiedError(TaskplanError):
    """A task was about to run before its dependencies finished.

    Indicates a scheduler bug rather than a user error.
    """

    def __init__(self, *, task_id: str, missing: tuple[str, ...]) -> None:
        self.task_id = task_id
        self.missing = missing
        super().__init__(
            f"Task {task_id!r} dispatched with unsatisfied dependencies: {', '.join(missing)}",
        )


class ToolExecutionError(TaskplanError):
    """Raised by tool executors when a task action fails."""

    def __init__(
        self,
        message: str,
        *,
        category: str | None = None,
        task_id: str | None = None,
    ) -> None:
        self.category = category
        self.task_id = task_id
        super().__init__(message)


class ToolTimeoutError(ToolExecutionError):
    """Tool call exceeded the task's hard timeout."""

    def __init__(self, *, task_id: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Task {task_id!r} timed out after {timeout_seconds:g}s",
            category="timeout",
            task_id=task_id,
        )


class InvalidTransitionError(TaskplanError):
    """A lifecycle guard refused a status transition."""

    def __init__(self, *, entity: str, status_from: str, status_to: str) -> None:
        self.entity = entity
        self.status_from = status_from
        self.status_to = status_to
        super().__init__(f"Invalid transition for {entity}: {status_from} -> {status_to}")


class StateNotFoundError(TaskplanError):
    """No persisted record exists for the requested key."""

    def __init__(self, *, key: str) -> None:
        self.key = key
        super().__init__(f"No persisted state for {key!r}")


class StateOwnershipError(TaskplanError):
    """Write refused because another writer holds the record."""

    def __init__(self, *, key: str, owner: str | None, held_by: str | None) -> None:
        self.key = key
        self.owner = owner
        self.held_by = held_by
        super().__init__(
            f"State {key!r} is held by {held_by or 'another writer'}; "
            f"write from {owner or 'anonymous writer'} refused",
        )


class StateCorruptionError(TaskplanError):
    """Persisted record failed to deserialize; requires manual intervention."""

    def __init__(self, *, key: str, last_good_checkpoint_id: str | None, reason: str) -> None:
        self.key = key
        self.last_good_checkpoint_id = last_good_checkpoint_id
        self.reason = reason
        hint = (
            f"last known good checkpoint: {last_good_checkpoint_id}"
            if last_good_checkpoint_id is not None
            else "no checkpoint snapshot available"
        )
        super().__init__(f"Persisted state {key!r} is corrupt ({reason}); {hint}")


class RecoveryError(TaskplanError):
    """A resume/rollback/skip/restart request was refused."""

    def __init__(self, *, plan_id: str, reason: str) -> None:
        self.plan_id = plan_id
        self.reason = reason
        super().__init__(f"Cannot recover plan {plan_id!r}: {reason}")

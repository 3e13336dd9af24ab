"""Explicit task-type to executor lookup table."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from taskplan.engine.collaborators import ToolExecutor
from taskplan.errors import UnknownTaskTypeError
from taskplan.models import Task, TaskType


class HandlerTable:
    """Maps every supported task type to the executor that serves it."""

    def __init__(self, handlers: dict[TaskType, ToolExecutor] | None = None) -> None:
        self._handlers: dict[TaskType, ToolExecutor] = dict(handlers or {})

    @classmethod
    def uniform(cls, executor: ToolExecutor) -> HandlerTable:
        """One executor for every task type."""

        return cls(dict.fromkeys(TaskType, executor))

    def register(self, task_type: TaskType, executor: ToolExecutor) -> None:
        self._handlers[task_type] = executor

    def for_task(self, task: Task) -> ToolExecutor:
        try:
            return self._handlers[task.task_type]
        except KeyError:
            raise UnknownTaskTypeError(
                task_id=task.task_id,
                task_type=task.task_type.value,
            ) from None

    def validate(self, tasks: Iterable[Task]) -> None:
        """Reject tasks whose type has no registered handler."""

        for task in tasks:
            self.for_task(task)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def __iter__(self) -> Iterator[TaskType]:
        return iter(self._handlers)

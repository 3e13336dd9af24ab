"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from taskplan.engine.collaborators import (
    CheckpointAction,
    CheckpointDecision,
    ErrorClassification,
    RecoveryAction,
    RecoveryStrategy,
    ToolInvocation,
    ToolSelection,
)
from taskplan.engine.failure_classifier import RuleBasedDecisionService, classify_tool_failure
from taskplan.engine.handlers import HandlerTable
from taskplan.models import Checkpoint, Context, Task, TaskType
from taskplan.state import StateManager
from taskplan.storage.repository import SqliteStateStore

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


class FixedClock:
    """Deterministic clock advancing by `step` on every read."""

    def __init__(self, start: datetime = FIXED_NOW, step: timedelta = timedelta(seconds=1)) -> None:
        self.current = start
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            value = self.current
            self.current = value + self.step
            return value


class RecordingExecutor:
    """Tool executor that records calls and replays scripted failures per task."""

    def __init__(self, failures: Mapping[str, list[BaseException]] | None = None) -> None:
        self.failures = {task_id: list(errors) for task_id, errors in (failures or {}).items()}
        self.calls: list[str] = []
        self.invocations: list[ToolInvocation] = []
        self._lock = threading.Lock()

    def execute(self, invocation: ToolInvocation) -> Mapping[str, Any] | None:
        with self._lock:
            self.calls.append(invocation.task_id)
            self.invocations.append(invocation)
            pending = self.failures.get(invocation.task_id)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error
        return {"task": invocation.task_id, "attempt": invocation.attempt}


class ScriptedDecisionService:
    """Rule-based classification with a scripted recovery action per call."""

    def __init__(self, actions: list[RecoveryStrategy] | None = None) -> None:
        self.actions = list(actions or [])
        self.fallback = RuleBasedDecisionService()
        self.classified: list[ErrorClassification] = []

    def select_tool(self, invocation: ToolInvocation, context: Context) -> ToolSelection:
        return self.fallback.select_tool(invocation, context)

    def classify_error(self, error: BaseException, context: Context) -> ErrorClassification:
        classification = classify_tool_failure(error)
        self.classified.append(classification)
        return classification

    def select_recovery_strategy(
        self,
        classification: ErrorClassification,
        attempt: int,
        context: Context,
    ) -> RecoveryStrategy:
        if self.actions:
            return self.actions.pop(0)
        return RecoveryStrategy(action=RecoveryAction.FAIL)


class ScriptedApprovalGate:
    """Approval gate answering reached checkpoints from a script."""

    def __init__(self, actions: list[CheckpointAction]) -> None:
        self.actions = list(actions)
        self.seen: list[str] = []

    def request_approval(self, checkpoint: Checkpoint) -> CheckpointDecision:
        self.seen.append(checkpoint.checkpoint_id)
        action = self.actions.pop(0) if self.actions else CheckpointAction.CONTINUE
        return CheckpointDecision(action=action, feedback=f"{action.value} from test")


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def context(clock: FixedClock) -> Context:
    return Context(request_id="req-test", actor_id="tester", clock=clock)


@pytest.fixture()
def make_task() -> Callable[..., Task]:
    def _make(
        task_id: str,
        *,
        deps: tuple[str, ...] = (),
        task_type: TaskType = TaskType.EXECUTION,
        seconds: float = 60.0,
        **overrides: Any,
    ) -> Task:
        return Task(
            task_id=task_id,
            name=overrides.pop("name", f"Task {task_id}"),
            task_type=task_type,
            action=overrides.pop("action", f"run {task_id.lower()}"),
            dependencies=deps,
            estimated_seconds=seconds,
            **overrides,
        )

    return _make


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[SqliteStateStore]:
    state_store = SqliteStateStore(tmp_path / "state.db")
    state_store.init_schema()
    try:
        yield state_store
    finally:
        state_store.close()


@pytest.fixture()
def state_manager(store: SqliteStateStore, context: Context) -> StateManager:
    return StateManager(store, context=context)


@pytest.fixture()
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture()
def handlers(executor: RecordingExecutor) -> HandlerTable:
    return HandlerTable.uniform(executor)


@pytest.fixture()
def sleeps() -> list[float]:
    return []

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import Any

import allure
import pytest

from taskplan.config import Settings
from taskplan.engine.collaborators import (
    CheckpointAction,
    CheckpointDecision,
    ErrorCategory,
    RecoveryAction,
    RecoveryStrategy,
    ToolInvocation,
)
from taskplan.engine.failure_classifier import RuleBasedDecisionService
from taskplan.engine.handlers import HandlerTable
from taskplan.engine.orchestrator import Orchestrator
from taskplan.errors import (
    InvalidTransitionError,
    RecoveryError,
    StateOwnershipError,
    ToolExecutionError,
)
from taskplan.models import Context, PlanStatus, Task, TaskStatus, TaskType
from taskplan.planner import PlanBuilder

from conftest import RecordingExecutor, ScriptedApprovalGate, ScriptedDecisionService

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Orchestrator"),
]


def _orchestrator(
    handlers: HandlerTable,
    state_manager,
    context: Context,
    sleeps: list[float],
    *,
    decision_service=None,
    **kwargs: Any,
) -> Orchestrator:
    return Orchestrator(
        handlers=handlers,
        decision_service=decision_service or RuleBasedDecisionService(),
        state_manager=state_manager,
        context=context,
        sleep=sleeps.append,
        **kwargs,
    )


def _approved(
    orchestrator: Orchestrator,
    tasks: Sequence[Task],
    context: Context,
    plan_id: str = "plan-1",
):
    plan = PlanBuilder().build(tasks, context=context, plan_id=plan_id)
    return orchestrator.approve(plan)


def _task_statuses(state_manager, plan_id: str, task_id: str) -> list[str]:
    return [
        event.status_to
        for event in state_manager.list_events(plan_id)
        if event.task_id == task_id and event.status_to is not None
    ]


def test_independent_tasks_run_in_one_batch_then_join(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(
        orchestrator,
        [
            make_task("A", seconds=60),
            make_task("B", seconds=120),
            make_task("C", deps=("A", "B"), seconds=30),
        ],
        context,
    )

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.COMPLETED
    assert outcome.summary.batches == 2
    assert outcome.summary.completed == 3
    assert set(executor.calls[:2]) == {"A", "B"}
    assert executor.calls[2] == "C"
    assert sorted(plan.completed_task_ids) == ["A", "B", "C"]
    assert plan.results["C"].output == {"task": "C", "attempt": 1}
    assert sleeps == []

    persisted = state_manager.load("plan-1")
    assert persisted.status == PlanStatus.COMPLETED
    assert persisted.state.completed_tasks == 3
    assert persisted.state.can_resume is False
    assert state_manager.store.get("plan:plan-1").owner is None


def test_every_task_transition_is_written_through(
    make_task, context, handlers, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(orchestrator, [make_task("A")], context)

    orchestrator.start(plan)

    assert _task_statuses(state_manager, "plan-1", "A") == ["ready", "executing", "completed"]
    event_types = [event.event_type for event in state_manager.list_events("plan-1")]
    assert event_types[0] == "plan_approved"
    assert event_types[1] == "plan_started"
    assert event_types[-1] == "plan_completed"


def test_network_failure_is_retried_with_backoff(make_task, context, state_manager, sleeps) -> None:
    executor = RecordingExecutor({"D": [ToolExecutionError("connection reset by peer")]})
    orchestrator = _orchestrator(HandlerTable.uniform(executor), state_manager, context, sleeps)
    plan = _approved(orchestrator, [make_task("D")], context)

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.COMPLETED
    assert outcome.summary.retried == 1
    assert sleeps == [1.0]
    assert all(delay > 0 for delay in sleeps)
    assert [invocation.attempt for invocation in executor.invocations] == [1, 2]
    assert plan.task("D").retry_count == 1
    assert plan.results["D"].attempts == 2
    assert _task_statuses(state_manager, "plan-1", "D") == [
        "ready",
        "executing",
        "failed",
        "pending",
        "ready",
        "executing",
        "completed",
    ]
    classified = [
        event
        for event in state_manager.list_events("plan-1")
        if event.event_type == "task_failure_classified"
    ]
    assert classified[0].details["category"] == ErrorCategory.NETWORK.value
    assert classified[0].details["strategy"] == RecoveryAction.RETRY.value


def test_backoff_grows_across_retries(make_task, context, state_manager, sleeps) -> None:
    executor = RecordingExecutor(
        {"D": [ToolExecutionError("503 service temporarily unavailable")] * 3},
    )
    orchestrator = _orchestrator(HandlerTable.uniform(executor), state_manager, context, sleeps)
    plan = _approved(orchestrator, [make_task("D", max_retries=3)], context)

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.COMPLETED
    assert sleeps == [1.0, 2.0, 4.0]


def test_exhausted_retries_fail_the_plan(make_task, context, state_manager, sleeps) -> None:
    executor = RecordingExecutor({"D": [ConnectionError("down"), ConnectionError("still down")]})
    orchestrator = _orchestrator(HandlerTable.uniform(executor), state_manager, context, sleeps)
    plan = _approved(
        orchestrator,
        [make_task("D", max_retries=1), make_task("E", deps=("D",))],
        context,
    )

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.FAILED
    assert outcome.failed_task_id == "D"
    assert sleeps == [1.0]
    assert "E" not in executor.calls
    persisted = state_manager.load("plan-1")
    assert persisted.task("D").status == TaskStatus.FAILED
    assert persisted.task("D").error == "still down"
    assert persisted.state.can_resume is True
    assert persisted.state.resume_from_task == "D"


def test_non_retryable_task_is_not_retried(make_task, context, state_manager, sleeps) -> None:
    executor = RecordingExecutor({"D": [ConnectionError("down")]})
    orchestrator = _orchestrator(HandlerTable.uniform(executor), state_manager, context, sleeps)
    plan = _approved(orchestrator, [make_task("D", retryable=False)], context)

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.FAILED
    assert executor.calls == ["D"]


def test_skip_unblocks_dependents(make_task, context, state_manager, sleeps) -> None:
    executor = RecordingExecutor({"A": [ToolExecutionError("kaboom")]})
    decisions = ScriptedDecisionService([RecoveryStrategy(action=RecoveryAction.SKIP)])
    orchestrator = _orchestrator(
        HandlerTable.uniform(executor),
        state_manager,
        context,
        sleeps,
        decision_service=decisions,
    )
    plan = _approved(orchestrator, [make_task("A"), make_task("B", deps=("A",))], context)

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.COMPLETED
    assert outcome.summary.skipped == 1
    assert plan.task("A").status == TaskStatus.SKIPPED
    assert plan.task("B").status == TaskStatus.COMPLETED
    assert "A" not in plan.results


def test_failure_in_parallel_batch_aborts_plan_then_resume_completes(
    make_task, context, state_manager, sleeps
) -> None:
    executor = RecordingExecutor({"A": [ToolExecutionError("kaboom")]})
    orchestrator = _orchestrator(
        HandlerTable.uniform(executor),
        state_manager,
        context,
        sleeps,
        decision_service=ScriptedDecisionService(),
    )
    plan = _approved(
        orchestrator,
        [make_task("A"), make_task("B"), make_task("C", deps=("A", "B"))],
        context,
    )

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.FAILED
    assert outcome.failed_task_id == "A"
    assert "C" not in executor.calls
    assert plan.task("C").status == TaskStatus.PENDING

    resumed = orchestrator.resume("plan-1")

    assert resumed.status == PlanStatus.COMPLETED
    assert resumed.plan.state.recovery_attempts == 1
    assert executor.calls[-1] == "C"


def test_checkpoint_pauses_and_continue_finishes(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(
        orchestrator,
        [make_task("A", checkpoint=True), make_task("B", deps=("A",))],
        context,
    )

    paused = orchestrator.start(plan)

    assert paused.status == PlanStatus.PAUSED
    assert paused.checkpoint is not None
    assert paused.checkpoint.checkpoint_id == "cp-1"
    assert paused.checkpoint.reached_at is not None
    assert executor.calls == ["A"]
    assert state_manager.list_snapshots("plan-1") == ["cp-1"]
    assert state_manager.load("plan-1").state.last_checkpoint_id == "cp-1"

    finished = orchestrator.submit_decision(
        paused.plan,
        CheckpointDecision(action=CheckpointAction.CONTINUE, feedback="looks good"),
    )

    assert finished.status == PlanStatus.COMPLETED
    assert executor.calls == ["A", "B"]
    checkpoint = finished.plan.checkpoint("cp-1")
    assert checkpoint.approved is True
    assert checkpoint.feedback == "looks good"


def test_cancel_at_first_checkpoint_never_runs_next_phase(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(
        orchestrator,
        [
            make_task("A", checkpoint=True),
            make_task("B", deps=("A",)),
            make_task("C", deps=("B",)),
        ],
        context,
    )

    paused = orchestrator.start(plan)
    cancelled = orchestrator.submit_decision(
        paused.plan,
        CheckpointDecision(action=CheckpointAction.CANCEL),
    )

    assert cancelled.status == PlanStatus.CANCELLED
    assert executor.calls == ["A"]
    persisted = state_manager.load("plan-1")
    assert persisted.status == PlanStatus.CANCELLED
    assert persisted.checkpoint("cp-1").approved is False
    assert persisted.task("B").status == TaskStatus.PENDING
    with pytest.raises(RecoveryError, match="cancelled"):
        orchestrator.resume("plan-1")


def test_run_blocks_on_approval_gate_at_every_checkpoint(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    gate = ScriptedApprovalGate([CheckpointAction.CONTINUE, CheckpointAction.CONTINUE])
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps, approval_gate=gate)
    plan = _approved(
        orchestrator,
        [
            make_task("a", checkpoint=True),
            make_task("b", deps=("a",)),
            make_task("c", deps=("b",), checkpoint=True),
            make_task("d", deps=("c",)),
        ],
        context,
    )

    outcome = orchestrator.run(plan)

    assert outcome.status == PlanStatus.COMPLETED
    assert gate.seen == ["cp-1", "cp-2"]
    assert executor.calls == ["a", "b", "c", "d"]


def test_run_requires_an_approval_gate(make_task, context, handlers, state_manager, sleeps) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(orchestrator, [make_task("A")], context)

    with pytest.raises(ValueError, match="approval_gate"):
        orchestrator.run(plan)


def test_start_requires_approval(make_task, context, handlers, state_manager, sleeps) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = PlanBuilder().build([make_task("A")], context=context)

    with pytest.raises(InvalidTransitionError):
        orchestrator.start(plan)


def test_decisions_require_a_pending_checkpoint(
    make_task, context, handlers, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(
        orchestrator,
        [make_task("A", checkpoint=True), make_task("B", deps=("A",))],
        context,
    )

    with pytest.raises(RecoveryError, match="not paused"):
        orchestrator.submit_decision(plan, CheckpointDecision(action=CheckpointAction.CONTINUE))

    paused = orchestrator.start(plan)
    with pytest.raises(RecoveryError, match="no plan reviser"):
        orchestrator.submit_decision(paused.plan, CheckpointDecision(action=CheckpointAction.MODIFY))


class _AppendTaskReviser:
    def __init__(self) -> None:
        self.feedback: list[str | None] = []

    def revise(self, tasks: Sequence[Task], feedback: str | None, context: Context) -> Sequence[Task]:
        self.feedback.append(feedback)
        return [
            *tasks,
            Task(
                task_id="E",
                name="Extra step",
                task_type=TaskType.ANALYSIS,
                action="summarize results",
                dependencies=("B",),
            ),
        ]


def test_modify_rebuilds_plan_and_keeps_progress(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    reviser = _AppendTaskReviser()
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps, plan_reviser=reviser)
    plan = _approved(
        orchestrator,
        [make_task("A", checkpoint=True), make_task("B", deps=("A",))],
        context,
    )

    paused = orchestrator.start(plan)
    outcome = orchestrator.submit_decision(
        paused.plan,
        CheckpointDecision(action=CheckpointAction.MODIFY, feedback="add a summary"),
    )

    assert reviser.feedback == ["add a summary"]
    assert outcome.status == PlanStatus.COMPLETED
    assert executor.calls == ["A", "B", "E"]
    assert list(outcome.plan.tasks) == ["A", "B", "E"]
    assert outcome.plan.checkpoint("cp-1").approved is True
    assert set(outcome.plan.results) == {"A", "B", "E"}
    assert "plan_modified" in [event.event_type for event in state_manager.list_events("plan-1")]


def test_rollback_strategy_restores_snapshot_then_resume_reproduces_outcome(
    make_task, context, state_manager, sleeps
) -> None:
    executor = RecordingExecutor({"B": [ToolExecutionError("bad payload", category="validation")]})
    decisions = ScriptedDecisionService([RecoveryStrategy(action=RecoveryAction.ROLLBACK)])
    orchestrator = _orchestrator(
        HandlerTable.uniform(executor),
        state_manager,
        context,
        sleeps,
        decision_service=decisions,
    )
    plan = _approved(
        orchestrator,
        [
            make_task("A", checkpoint=True),
            make_task("B", deps=("A",)),
            make_task("C", deps=("B",)),
        ],
        context,
    )
    paused = orchestrator.start(plan)
    snapshot_statuses = {task_id: task.status for task_id, task in paused.plan.tasks.items()}

    rolled_back = orchestrator.submit_decision(
        paused.plan,
        CheckpointDecision(action=CheckpointAction.CONTINUE),
    )

    assert rolled_back.status == PlanStatus.PAUSED
    assert rolled_back.rollback_checkpoint_id == "cp-1"
    assert rolled_back.failed_task_id == "B"
    restored = state_manager.load("plan-1")
    assert {task_id: task.status for task_id, task in restored.tasks.items()} == snapshot_statuses
    assert restored.checkpoint("cp-1").approved is None

    resumed = orchestrator.resume("plan-1")

    assert resumed.status == PlanStatus.COMPLETED
    assert executor.calls == ["A", "B", "B", "C"]
    assert resumed.plan.state.recovery_attempts == 2


def test_operator_rollback_of_failed_plan_then_continue(
    make_task, context, state_manager, sleeps
) -> None:
    executor = RecordingExecutor({"B": [ToolExecutionError("kaboom")]})
    orchestrator = _orchestrator(
        HandlerTable.uniform(executor),
        state_manager,
        context,
        sleeps,
        decision_service=ScriptedDecisionService(),
    )
    plan = _approved(
        orchestrator,
        [make_task("A", checkpoint=True), make_task("B", deps=("A",))],
        context,
    )
    paused = orchestrator.start(plan)
    failed = orchestrator.submit_decision(
        paused.plan,
        CheckpointDecision(action=CheckpointAction.CONTINUE),
    )
    assert failed.status == PlanStatus.FAILED

    rolled_back = orchestrator.rollback("plan-1", "cp-1")

    assert rolled_back.status == PlanStatus.PAUSED
    assert rolled_back.checkpoint is not None
    assert rolled_back.plan.task("B").status == TaskStatus.PENDING

    finished = orchestrator.submit_decision(
        rolled_back.plan,
        CheckpointDecision(action=CheckpointAction.CONTINUE),
    )
    assert finished.status == PlanStatus.COMPLETED
    assert finished.plan.task("A").status == TaskStatus.COMPLETED


class _BlockingExecutor:
    def __init__(self) -> None:
        self.release = threading.Event()

    def execute(self, invocation: ToolInvocation) -> Mapping[str, Any] | None:
        self.release.wait(timeout=5)
        return {}


def test_task_timeout_is_classified_as_timeout(make_task, context, state_manager, sleeps) -> None:
    executor = _BlockingExecutor()
    decisions = ScriptedDecisionService()
    orchestrator = _orchestrator(
        HandlerTable.uniform(executor),
        state_manager,
        context,
        sleeps,
        decision_service=decisions,
    )
    plan = _approved(orchestrator, [make_task("slow", timeout_seconds=0.05)], context)

    try:
        outcome = orchestrator.start(plan)
    finally:
        executor.release.set()

    assert outcome.status == PlanStatus.FAILED
    assert decisions.classified[0].category == ErrorCategory.TIMEOUT
    assert "timed out" in (plan.task("slow").error or "")


def test_tool_call_tasks_get_a_tool_selection(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(
        orchestrator,
        [make_task("fetch", task_type=TaskType.TOOL_CALL, parameters={"tool": "curl"})],
        context,
    )

    orchestrator.start(plan)

    assert executor.invocations[0].tool is not None
    assert executor.invocations[0].tool.tool == "curl"
    assert plan.results["fetch"].tool == "curl"


def test_crashed_execution_resumes_from_persisted_state(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(orchestrator, [make_task("A"), make_task("B", deps=("A",))], context)
    plan.transition(PlanStatus.EXECUTING)
    plan.state.can_resume = True
    plan.task("A").status = TaskStatus.EXECUTING
    state_manager.save(plan)

    outcome = orchestrator.resume("plan-1")

    assert outcome.status == PlanStatus.COMPLETED
    assert executor.calls == ["A", "B"]


def test_foreign_writer_claim_blocks_orchestrator(
    make_task, context, handlers, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps, owner_id="me")
    plan = PlanBuilder().build([make_task("A")], context=context, plan_id="plan-1")
    state_manager.save(plan)
    state_manager.acquire("plan-1", owner="someone-else")

    with pytest.raises(StateOwnershipError, match="someone-else"):
        orchestrator.approve(plan)


def test_parallelism_cap_of_one_still_completes(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps, max_parallel_tasks=1)
    plan = _approved(orchestrator, [make_task("A"), make_task("B"), make_task("C")], context)

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.COMPLETED
    assert sorted(executor.calls) == ["A", "B", "C"]


def test_from_settings_uses_configured_owner_and_retry_policy(
    context, handlers, state_manager
) -> None:
    settings = Settings()
    settings.orchestrator.owner_id = "worker-7"
    settings.orchestrator.retry_base_seconds = 0.5

    orchestrator = Orchestrator.from_settings(
        settings.orchestrator,
        handlers=handlers,
        decision_service=RuleBasedDecisionService(),
        state_manager=state_manager,
        context=context,
    )

    assert orchestrator.owner_id == "worker-7"
    assert orchestrator.retry_policy.base_seconds == 0.5
    assert orchestrator.max_parallel_tasks == 8


def test_retry_override_of_zero_still_backs_off(make_task, context, state_manager, sleeps) -> None:
    executor = RecordingExecutor({"D": [ToolExecutionError("connection reset by peer")]})
    decisions = ScriptedDecisionService(
        [RecoveryStrategy(action=RecoveryAction.RETRY, parameters={"base_seconds": 0})],
    )
    orchestrator = _orchestrator(
        HandlerTable.uniform(executor),
        state_manager,
        context,
        sleeps,
        decision_service=decisions,
    )
    plan = _approved(orchestrator, [make_task("D")], context)

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.COMPLETED
    assert sleeps == [1.0]


def test_interrupted_plan_must_go_through_resume(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    orchestrator = _orchestrator(handlers, state_manager, context, sleeps)
    plan = _approved(orchestrator, [make_task("A"), make_task("B", deps=("A",))], context)
    plan.transition(PlanStatus.EXECUTING)
    plan.state.can_resume = True
    plan.task("A").status = TaskStatus.EXECUTING
    state_manager.save(plan)

    with pytest.raises(RecoveryError, match="resume"):
        orchestrator.start(state_manager.load("plan-1"))
    assert executor.calls == []
    assert state_manager.store.get("plan:plan-1").owner is None

    outcome = orchestrator.resume("plan-1")

    assert outcome.status == PlanStatus.COMPLETED
    assert executor.calls == ["A", "B"]


def test_default_task_timeout_applies_to_tasks_without_one(
    make_task, context, handlers, executor, state_manager, sleeps
) -> None:
    settings = Settings()
    settings.orchestrator.default_task_timeout_seconds = 30.0
    orchestrator = Orchestrator.from_settings(
        settings.orchestrator,
        handlers=handlers,
        decision_service=RuleBasedDecisionService(),
        state_manager=state_manager,
        context=context,
        sleep=sleeps.append,
    )
    plan = _approved(
        orchestrator,
        [make_task("A"), make_task("B", deps=("A",), timeout_seconds=5.0)],
        context,
    )

    outcome = orchestrator.start(plan)

    assert outcome.status == PlanStatus.COMPLETED
    timeouts = {invocation.task_id: invocation.timeout_seconds for invocation in executor.invocations}
    assert timeouts == {"A": 30.0, "B": 5.0}

"""Plan execution state machine: batches, retries, checkpoints and recovery."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from taskplan.engine.backoff import RetryPolicy
from taskplan.engine.collaborators import (
    ApprovalGate,
    CheckpointAction,
    CheckpointDecision,
    DecisionService,
    ErrorClassification,
    PlanReviser,
    RecoveryAction,
    ToolExecutor,
    ToolInvocation,
    ToolSelection,
)
from taskplan.engine.handlers import HandlerTable
from taskplan.errors import (
    DependencyUnsatisfiedError,
    InvalidTransitionError,
    RecoveryError,
    ToolTimeoutError,
)
from taskplan.models import (
    Checkpoint,
    Context,
    ExecutionPlan,
    Phase,
    PlanStatus,
    Task,
    TaskResult,
    TaskStatus,
    TaskType,
)
from taskplan.planner import PlanBuilder
from taskplan.scheduler import schedule_phase

if TYPE_CHECKING:
    from taskplan.config import OrchestratorSettings
    from taskplan.state import StateManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    """Aggregate drive counters for reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    batches: int = 0


@dataclass(slots=True)
class RunOutcome:
    """Where a drive stopped: terminal status, checkpoint pause, or rollback pause."""

    plan_id: str
    status: PlanStatus
    summary: RunSummary
    plan: ExecutionPlan
    checkpoint: Checkpoint | None = None
    failed_task_id: str | None = None
    rollback_checkpoint_id: str | None = None


class _TaskOutcome(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    ROLLBACK = "rollback"
    ABORTED = "aborted"


@dataclass(slots=True)
class _BatchControl:
    abort: threading.Event = field(default_factory=threading.Event)
    failed_task_id: str | None = None
    rollback_checkpoint_id: str | None = None


class Orchestrator:
    """Drives an approved execution plan to a terminal status or a checkpoint pause.

    The drive loop is a synchronous state machine: `start` runs until the plan
    completes, fails, or pauses at a checkpoint, and `submit_decision` applies the
    operator's `continue|cancel|modify` and keeps going. Tasks in one batch run on
    a thread pool and are joined before the next batch is dispatched. Every task
    and plan transition is written through the state manager before the next one.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        handlers: HandlerTable,
        decision_service: DecisionService,
        state_manager: StateManager,
        context: Context,
        retry_policy: RetryPolicy | None = None,
        max_parallel_tasks: int = 8,
        default_task_timeout_seconds: float | None = None,
        approval_gate: ApprovalGate | None = None,
        plan_builder: PlanBuilder | None = None,
        plan_reviser: PlanReviser | None = None,
        owner_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_parallel_tasks < 1:
            raise ValueError("max_parallel_tasks must be >= 1.")
        self.handlers = handlers
        self.decision_service = decision_service
        self.state_manager = state_manager
        self.context = context
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_parallel_tasks = max_parallel_tasks
        self.default_task_timeout_seconds = default_task_timeout_seconds
        self.approval_gate = approval_gate
        self.plan_builder = plan_builder or PlanBuilder(handlers=handlers)
        self.plan_reviser = plan_reviser
        self.owner_id = owner_id or f"orchestrator-{context.request_id}"
        self._sleep = sleep
        self._state_lock = threading.RLock()
        self._decision_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        *,
        handlers: HandlerTable,
        decision_service: DecisionService,
        state_manager: StateManager,
        context: Context,
        **kwargs: Any,
    ) -> Orchestrator:
        return cls(
            handlers=handlers,
            decision_service=decision_service,
            state_manager=state_manager,
            context=context,
            retry_policy=RetryPolicy(
                base_seconds=settings.retry_base_seconds,
                multiplier=settings.retry_multiplier,
                max_seconds=settings.retry_max_seconds,
            ),
            max_parallel_tasks=settings.max_parallel_tasks,
            default_task_timeout_seconds=settings.default_task_timeout_seconds,
            owner_id=settings.owner_id,
            **kwargs,
        )

    def approve(self, plan: ExecutionPlan) -> ExecutionPlan:
        """Approve a freshly built plan (`pending -> approved`)."""

        self.handlers.validate(plan.tasks.values())
        with self._ownership(plan), self._state_lock:
            status_from = plan.status
            plan.transition(PlanStatus.APPROVED)
            self._commit(plan, "plan_approved", status_from=status_from)
        logger.info("Plan %s approved", plan.plan_id)
        return plan

    def start(self, plan: ExecutionPlan) -> RunOutcome:
        """Begin driving an approved plan.

        A plan that is already `executing` was interrupted mid-run; its in-flight
        tasks must be reset first, which is what `resume` does.
        """

        if plan.status == PlanStatus.EXECUTING:
            raise RecoveryError(
                plan_id=plan.plan_id,
                reason="plan is already executing; use resume() to continue it",
            )
        if plan.status != PlanStatus.APPROVED:
            raise InvalidTransitionError(
                entity=f"plan {plan.plan_id}",
                status_from=plan.status.value,
                status_to=PlanStatus.EXECUTING.value,
            )
        with self._ownership(plan):
            with self._state_lock:
                plan.transition(PlanStatus.EXECUTING)
                plan.state.can_resume = True
                self._commit(plan, "plan_started", status_from=PlanStatus.APPROVED)
            return self._drive(plan, RunSummary())

    def run(self, plan: ExecutionPlan) -> RunOutcome:
        """Drive the plan, blocking on the approval gate at every checkpoint."""

        if self.approval_gate is None:
            raise ValueError("run() needs an approval_gate; use start()/submit_decision().")
        outcome = self.start(plan)
        while outcome.status == PlanStatus.PAUSED and outcome.checkpoint is not None:
            decision = self.approval_gate.request_approval(outcome.checkpoint)
            outcome = self.submit_decision(outcome.plan, decision)
        return outcome

    def submit_decision(self, plan: ExecutionPlan, decision: CheckpointDecision) -> RunOutcome:
        """Apply an operator decision to a plan paused at a checkpoint."""

        checkpoint = self._pending_checkpoint(plan)
        if decision.action == CheckpointAction.MODIFY and self.plan_reviser is None:
            raise RecoveryError(plan_id=plan.plan_id, reason="no plan reviser is configured")

        with self._ownership(plan):
            now = self.context.now()
            with self._state_lock:
                checkpoint.feedback = decision.feedback
                checkpoint.resolved_at = now
                checkpoint.approved = decision.action != CheckpointAction.CANCEL

                if decision.action == CheckpointAction.CANCEL:
                    plan.transition(PlanStatus.CANCELLED)
                    plan.state.can_resume = False
                    plan.state.resume_from_task = None
                    self._commit(
                        plan,
                        "checkpoint_cancelled",
                        status_from=PlanStatus.PAUSED,
                        details={"checkpoint_id": checkpoint.checkpoint_id},
                    )
                    logger.info(
                        "Plan %s cancelled at checkpoint %s",
                        plan.plan_id,
                        checkpoint.checkpoint_id,
                    )
                    return RunOutcome(
                        plan_id=plan.plan_id,
                        status=plan.status,
                        summary=RunSummary(),
                        plan=plan,
                        checkpoint=checkpoint,
                    )

                if decision.action == CheckpointAction.MODIFY:
                    plan = self._rebuild(plan, decision.feedback)
                    self._commit(
                        plan,
                        "plan_modified",
                        status_from=PlanStatus.PAUSED,
                        details={
                            "checkpoint_id": checkpoint.checkpoint_id,
                            "task_count": len(plan.tasks),
                        },
                    )
                else:
                    plan.transition(PlanStatus.EXECUTING)
                    self._commit(
                        plan,
                        "checkpoint_approved",
                        status_from=PlanStatus.PAUSED,
                        details={"checkpoint_id": checkpoint.checkpoint_id},
                    )
            logger.info(
                "Plan %s continues past checkpoint %s (%s)",
                plan.plan_id,
                checkpoint.checkpoint_id,
                decision.action.value,
            )
            return self._drive(plan, RunSummary())

    def resume(self, plan_id: str) -> RunOutcome:
        """Resume a paused or failed plan from persisted state and keep driving."""

        plan = self.state_manager.resume(plan_id, owner=self.owner_id)
        with self._ownership(plan):
            return self._drive(plan, RunSummary())

    def rollback(self, plan_id: str, checkpoint_id: str) -> RunOutcome:
        """Restore the checkpoint snapshot; the plan stays paused awaiting a decision."""

        plan = self.state_manager.rollback_to_checkpoint(
            plan_id,
            checkpoint_id,
            owner=self.owner_id,
        )
        return RunOutcome(
            plan_id=plan.plan_id,
            status=plan.status,
            summary=RunSummary(),
            plan=plan,
            checkpoint=plan.checkpoint(checkpoint_id),
            rollback_checkpoint_id=checkpoint_id,
        )

    @contextmanager
    def _ownership(self, plan: ExecutionPlan) -> Iterator[None]:
        self.state_manager.save(plan, owner=self.owner_id)
        self.state_manager.acquire(plan.plan_id, owner=self.owner_id)
        try:
            yield
        finally:
            self.state_manager.release(plan.plan_id, owner=self.owner_id)

    def _drive(self, plan: ExecutionPlan, summary: RunSummary) -> RunOutcome:
        for phase in plan.phases:
            for batch in schedule_phase(plan, phase):
                checkpoint = self._reached_checkpoint(plan)
                if checkpoint is not None:
                    return self._pause(plan, checkpoint, summary)

                control = self._run_batch(plan, phase, batch, summary)
                if control.rollback_checkpoint_id is not None:
                    return self._rollback_after_failure(plan, control, summary)
                if control.failed_task_id is not None:
                    return self._fail(plan, control.failed_task_id, summary)

        checkpoint = self._reached_checkpoint(plan)
        if checkpoint is not None:
            return self._pause(plan, checkpoint, summary)

        unsatisfied = plan.first_unsatisfied_task_id()
        if unsatisfied is not None:
            return self._fail(plan, unsatisfied, summary)
        return self._complete(plan, summary)

    def _run_batch(
        self,
        plan: ExecutionPlan,
        phase: Phase,
        batch: tuple[str, ...],
        summary: RunSummary,
    ) -> _BatchControl:
        control = _BatchControl()
        with self._state_lock:
            for task_id in batch:
                task = plan.task(task_id)
                missing = tuple(
                    dep for dep in task.dependencies if not plan.task(dep).is_satisfied
                )
                if missing:
                    raise DependencyUnsatisfiedError(task_id=task_id, missing=missing)
            for task_id in batch:
                self._transition(plan, plan.task(task_id), TaskStatus.READY)
            summary.batches += 1

        logger.info(
            "Plan %s phase %s: dispatching batch of %d task(s): %s",
            plan.plan_id,
            phase.name,
            len(batch),
            ", ".join(batch),
        )
        if len(batch) == 1:
            self._run_task(plan, batch[0], control, summary)
        else:
            workers = min(len(batch), self.max_parallel_tasks)
            with ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix=f"taskplan-{plan.plan_id[:8]}",
            ) as pool:
                futures = [
                    pool.submit(self._run_task, plan, task_id, control, summary)
                    for task_id in batch
                ]
                for future in futures:
                    future.result()

        with self._state_lock:
            plan.current_task_id = None
        return control

    def _run_task(
        self,
        plan: ExecutionPlan,
        task_id: str,
        control: _BatchControl,
        summary: RunSummary,
    ) -> _TaskOutcome:
        task = plan.task(task_id)
        executor = self.handlers.for_task(task)
        while True:
            with self._state_lock:
                if control.abort.is_set():
                    self._transition(plan, task, TaskStatus.PENDING, event="task_not_dispatched")
                    return _TaskOutcome.ABORTED
                invocation = self._invocation(task)
                self._transition(plan, task, TaskStatus.EXECUTING)
                plan.current_task_id = task_id
                summary.processed += 1

            try:
                output = self._execute(executor, invocation)
            except Exception as error:  # noqa: BLE001 - every tool failure goes to the decision service
                outcome, delay = self._handle_failure(plan, task, error, control, summary)
                if outcome is not None:
                    return outcome
                self._sleep(delay)
                with self._state_lock:
                    if control.abort.is_set():
                        return _TaskOutcome.ABORTED
                    self._transition(plan, task, TaskStatus.READY)
                continue

            with self._state_lock:
                completed_at = self.context.now()
                started_at = task.started_at or completed_at
                plan.results[task_id] = TaskResult(
                    task_id=task_id,
                    output=dict(output or {}),
                    duration_seconds=max((completed_at - started_at).total_seconds(), 0.0),
                    attempts=task.retry_count + 1,
                    completed_at=completed_at,
                    tool=invocation.tool.tool if invocation.tool is not None else None,
                )
                if task_id not in plan.completed_task_ids:
                    plan.completed_task_ids.append(task_id)
                self._transition(plan, task, TaskStatus.COMPLETED, at=completed_at)
                summary.completed += 1
            return _TaskOutcome.COMPLETED

    def _handle_failure(
        self,
        plan: ExecutionPlan,
        task: Task,
        error: Exception,
        control: _BatchControl,
        summary: RunSummary,
    ) -> tuple[_TaskOutcome | None, float]:
        """Record the failure and apply one recovery strategy.

        Returns `(None, delay)` when the task should be retried after `delay`.
        """

        message = str(error) or type(error).__name__
        with self._state_lock:
            self._transition(plan, task, TaskStatus.FAILED, error=message)
            attempt = task.retry_count + 1

        with self._decision_lock:
            classification = self.decision_service.classify_error(error, self.context)
            strategy = self.decision_service.select_recovery_strategy(
                classification,
                attempt,
                self.context,
            )

        with self._state_lock:
            self.state_manager.record_event(
                plan.plan_id,
                "task_failure_classified",
                task_id=task.task_id,
                details={
                    **classification.to_event_details(),
                    "attempt": attempt,
                    "strategy": strategy.action.value,
                },
            )
            action = strategy.action
            if action == RecoveryAction.RETRY and task.retryable and task.retry_count < task.max_retries:
                task.retry_count += 1
                delay = self.retry_policy.delay_for(task.retry_count, strategy.parameters)
                self._transition(
                    plan,
                    task,
                    TaskStatus.PENDING,
                    event="task_retry_scheduled",
                    details={"attempt": task.retry_count + 1, "delay_seconds": delay},
                )
                summary.retried += 1
                logger.warning(
                    "Task %s failed (%s): retry %d/%d in %.2fs",
                    task.task_id,
                    classification.category.value,
                    task.retry_count,
                    task.max_retries,
                    delay,
                )
                return None, delay

            if action == RecoveryAction.SKIP:
                self._transition(plan, task, TaskStatus.SKIPPED, event="task_skipped")
                summary.skipped += 1
                logger.warning(
                    "Task %s skipped after %s failure",
                    task.task_id,
                    classification.category.value,
                )
                return _TaskOutcome.SKIPPED, 0.0

            if action == RecoveryAction.ROLLBACK:
                checkpoint_id = self._rollback_target(plan, strategy.parameters)
                if checkpoint_id is not None:
                    summary.failed += 1
                    if control.rollback_checkpoint_id is None:
                        control.rollback_checkpoint_id = checkpoint_id
                        control.failed_task_id = task.task_id
                    control.abort.set()
                    return _TaskOutcome.ROLLBACK, 0.0

            summary.failed += 1
            if control.failed_task_id is None:
                control.failed_task_id = task.task_id
            control.abort.set()
            _log_unrecovered(task, classification, action)
            return _TaskOutcome.FAILED, 0.0

    def _rollback_target(self, plan: ExecutionPlan, parameters: Mapping[str, Any]) -> str | None:
        requested = parameters.get("checkpoint_id")
        if isinstance(requested, str) and requested:
            return requested
        return plan.state.last_checkpoint_id

    def _invocation(self, task: Task) -> ToolInvocation:
        invocation = ToolInvocation(
            task_id=task.task_id,
            name=task.name,
            task_type=task.task_type,
            action=task.action,
            description=task.description,
            parameters=dict(task.parameters),
            attempt=task.retry_count + 1,
            timeout_seconds=(
                task.timeout_seconds
                if task.timeout_seconds is not None
                else self.default_task_timeout_seconds
            ),
            context=self.context,
        )
        if task.task_type != TaskType.TOOL_CALL:
            return invocation
        with self._decision_lock:
            selection: ToolSelection = self.decision_service.select_tool(invocation, self.context)
        return replace(invocation, tool=selection)

    def _execute(self, executor: ToolExecutor, invocation: ToolInvocation) -> Mapping[str, Any] | None:
        if invocation.timeout_seconds is None:
            return executor.execute(invocation)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tool-{invocation.task_id}")
        future = pool.submit(executor.execute, invocation)
        try:
            return future.result(timeout=invocation.timeout_seconds)
        except TimeoutError:
            if future.done():
                raise
            raise ToolTimeoutError(
                task_id=invocation.task_id,
                timeout_seconds=invocation.timeout_seconds,
            ) from None
        finally:
            pool.shutdown(wait=False)

    def _reached_checkpoint(self, plan: ExecutionPlan) -> Checkpoint | None:
        """First unresolved checkpoint whose preceding tasks are all satisfied."""

        order = {task_id: index for index, task_id in enumerate(plan.tasks)}
        satisfied_prefix = 0
        for task in plan.tasks.values():
            if not task.is_satisfied:
                break
            satisfied_prefix += 1
        for checkpoint in sorted(plan.checkpoints, key=lambda item: order[item.after_task_id]):
            if checkpoint.resolved:
                continue
            if order[checkpoint.after_task_id] < satisfied_prefix:
                return checkpoint
            return None
        return None

    def _pending_checkpoint(self, plan: ExecutionPlan) -> Checkpoint:
        if plan.status != PlanStatus.PAUSED:
            raise RecoveryError(
                plan_id=plan.plan_id,
                reason=f"plan is {plan.status.value}, not paused",
            )
        checkpoint_id = plan.state.last_checkpoint_id
        if checkpoint_id is None:
            raise RecoveryError(plan_id=plan.plan_id, reason="no checkpoint is pending")
        try:
            checkpoint = plan.checkpoint(checkpoint_id)
        except KeyError:
            raise RecoveryError(
                plan_id=plan.plan_id,
                reason=f"unknown checkpoint {checkpoint_id}",
            ) from None
        if checkpoint.resolved:
            raise RecoveryError(
                plan_id=plan.plan_id,
                reason=f"checkpoint {checkpoint_id} is already resolved",
            )
        return checkpoint

    def _pause(self, plan: ExecutionPlan, checkpoint: Checkpoint, summary: RunSummary) -> RunOutcome:
        with self._state_lock:
            checkpoint.reached_at = self.context.now()
            plan.current_task_id = None
            plan.transition(PlanStatus.PAUSED)
            plan.state.last_checkpoint_id = checkpoint.checkpoint_id
            plan.state.can_resume = True
            plan.state.resume_from_task = plan.first_unsatisfied_task_id()
            self._commit(
                plan,
                "checkpoint_reached",
                status_from=PlanStatus.EXECUTING,
                details={
                    "checkpoint_id": checkpoint.checkpoint_id,
                    "after_task_id": checkpoint.after_task_id,
                },
            )
            self.state_manager.create_snapshot(
                plan,
                checkpoint.checkpoint_id,
                owner=self.owner_id,
            )
        logger.info(
            "Plan %s paused at checkpoint %s (after %s)",
            plan.plan_id,
            checkpoint.checkpoint_id,
            checkpoint.after_task_id,
        )
        return RunOutcome(
            plan_id=plan.plan_id,
            status=plan.status,
            summary=summary,
            plan=plan,
            checkpoint=checkpoint,
        )

    def _fail(self, plan: ExecutionPlan, failed_task_id: str, summary: RunSummary) -> RunOutcome:
        with self._state_lock:
            plan.current_task_id = None
            plan.transition(PlanStatus.FAILED)
            plan.state.can_resume = True
            plan.state.resume_from_task = failed_task_id
            self._commit(
                plan,
                "plan_failed",
                status_from=PlanStatus.EXECUTING,
                details={"failed_task_id": failed_task_id},
            )
        logger.error(
            "Plan %s failed at task %s: completed=%d skipped=%d",
            plan.plan_id,
            failed_task_id,
            plan.state.completed_tasks,
            plan.state.skipped_tasks,
        )
        return RunOutcome(
            plan_id=plan.plan_id,
            status=plan.status,
            summary=summary,
            plan=plan,
            failed_task_id=failed_task_id,
        )

    def _complete(self, plan: ExecutionPlan, summary: RunSummary) -> RunOutcome:
        with self._state_lock:
            plan.current_task_id = None
            plan.transition(PlanStatus.COMPLETED)
            plan.state.can_resume = False
            plan.state.resume_from_task = None
            self._commit(plan, "plan_completed", status_from=PlanStatus.EXECUTING)
        logger.info(
            "Plan %s completed: completed=%d skipped=%d retried=%d",
            plan.plan_id,
            plan.state.completed_tasks,
            plan.state.skipped_tasks,
            summary.retried,
        )
        return RunOutcome(plan_id=plan.plan_id, status=plan.status, summary=summary, plan=plan)

    def _rollback_after_failure(
        self,
        plan: ExecutionPlan,
        control: _BatchControl,
        summary: RunSummary,
    ) -> RunOutcome:
        checkpoint_id = control.rollback_checkpoint_id
        assert checkpoint_id is not None  # noqa: S101
        logger.warning(
            "Plan %s rolling back to checkpoint %s after task %s failed",
            plan.plan_id,
            checkpoint_id,
            control.failed_task_id,
        )
        try:
            restored = self.state_manager.rollback_to_checkpoint(
                plan.plan_id,
                checkpoint_id,
                owner=self.owner_id,
            )
        except RecoveryError:
            logger.exception("Plan %s rollback to %s refused", plan.plan_id, checkpoint_id)
            return self._fail(plan, control.failed_task_id or checkpoint_id, summary)
        return RunOutcome(
            plan_id=restored.plan_id,
            status=restored.status,
            summary=summary,
            plan=restored,
            failed_task_id=control.failed_task_id,
            rollback_checkpoint_id=checkpoint_id,
        )

    def _rebuild(self, plan: ExecutionPlan, feedback: str | None) -> ExecutionPlan:
        """Rebuild a plan from the reviser's task list, keeping surviving progress."""

        assert self.plan_reviser is not None  # noqa: S101
        current = [replace(task, parameters=dict(task.parameters)) for task in plan.tasks.values()]
        revised = self.plan_reviser.revise(current, feedback, self.context)
        fresh = [
            replace(
                task,
                status=TaskStatus.PENDING,
                retry_count=0,
                started_at=None,
                completed_at=None,
                error=None,
            )
            for task in revised
        ]
        rebuilt = self.plan_builder.build(
            fresh,
            context=self.context,
            plan_id=plan.plan_id,
            request=plan.request,
        )
        for task_id, task in rebuilt.tasks.items():
            previous = plan.tasks.get(task_id)
            if previous is None or not previous.is_satisfied:
                continue
            task.status = previous.status
            task.started_at = previous.started_at
            task.completed_at = previous.completed_at
            task.retry_count = previous.retry_count
            if task_id in plan.results:
                rebuilt.results[task_id] = plan.results[task_id]
        rebuilt.completed_task_ids = [
            task_id
            for task_id in plan.completed_task_ids
            if task_id in rebuilt.tasks and rebuilt.tasks[task_id].status == TaskStatus.COMPLETED
        ]

        previous_checkpoints = {
            checkpoint.after_task_id: checkpoint
            for checkpoint in plan.checkpoints
            if checkpoint.resolved
        }
        for checkpoint in rebuilt.checkpoints:
            previous = previous_checkpoints.get(checkpoint.after_task_id)
            if previous is None:
                continue
            checkpoint.approved = previous.approved
            checkpoint.feedback = previous.feedback
            checkpoint.reached_at = previous.reached_at
            checkpoint.resolved_at = previous.resolved_at

        rebuilt.created_at = plan.created_at
        rebuilt.transition(PlanStatus.APPROVED)
        rebuilt.transition(PlanStatus.EXECUTING)
        rebuilt.state.recovery_attempts = plan.state.recovery_attempts
        rebuilt.state.last_checkpoint_id = plan.state.last_checkpoint_id
        logger.info(
            "Plan %s rebuilt after modify: tasks %d -> %d",
            plan.plan_id,
            len(plan.tasks),
            len(rebuilt.tasks),
        )
        return rebuilt

    def _transition(
        self,
        plan: ExecutionPlan,
        task: Task,
        status: TaskStatus,
        *,
        error: str | None = None,
        at: datetime | None = None,
        event: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        status_from = task.status
        task.transition(status, at=at or self.context.now(), error=error)
        self._commit(
            plan,
            event or f"task_{status.value}",
            task_id=task.task_id,
            status_from=status_from,
            status_to=status,
            details=details if error is None else {**(details or {}), "error": error},
        )

    def _commit(  # noqa: PLR0913
        self,
        plan: ExecutionPlan,
        event_type: str,
        *,
        task_id: str | None = None,
        status_from: Enum | None = None,
        status_to: Enum | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        plan.updated_at = self.context.now()
        plan.state.refresh(plan)
        self.state_manager.save(plan, owner=self.owner_id)
        self.state_manager.record_event(
            plan.plan_id,
            event_type,
            task_id=task_id,
            status_from=status_from.value if status_from is not None else None,
            status_to=(status_to or plan.status).value,
            details=details,
        )


def _log_unrecovered(
    task: Task,
    classification: ErrorClassification,
    action: RecoveryAction,
) -> None:
    reason = "retries exhausted" if action == RecoveryAction.RETRY else f"strategy {action.value}"
    logger.error(
        "Task %s failed unrecovered (%s, %s): %s",
        task.task_id,
        classification.category.value,
        reason,
        task.error,
    )

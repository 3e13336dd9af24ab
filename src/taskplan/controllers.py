"""Controllers for operator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from taskplan.config import Settings
from taskplan.models import Context, ExecutionPlan, Task
from taskplan.planner import PlanBuilder
from taskplan.scheduler import layout_phases
from taskplan.serialization import task_from_dict
from taskplan.state import StateManager
from taskplan.storage.repository import SqliteStateStore


@dataclass(slots=True)
class PlanPreviewCommand:
    """CLI input for building a plan from a task file without running it."""

    db_path: Path | None
    tasks_file: Path
    request: str | None
    save: bool


@dataclass(slots=True)
class StateListCommand:
    """CLI input for plan listing."""

    db_path: Path | None


@dataclass(slots=True)
class StateInspectCommand:
    """CLI input for plan inspection."""

    db_path: Path | None
    plan_id: str
    events_limit: int | None


@dataclass(slots=True)
class StatePlanCommand:
    """CLI input for resume/restart/unlock operations."""

    db_path: Path | None
    plan_id: str


@dataclass(slots=True)
class StateRollbackCommand:
    """CLI input for rollback to a checkpoint snapshot."""

    db_path: Path | None
    plan_id: str
    checkpoint_id: str


@dataclass(slots=True)
class StateSkipCommand:
    """CLI input for operator task skip."""

    db_path: Path | None
    plan_id: str
    task_id: str


@dataclass(slots=True)
class StateCleanupCommand:
    """CLI input for terminal-plan cleanup."""

    db_path: Path | None
    older_than_days: int | None


class TaskplanCliController:
    """Operator surface over the plan builder and the state & recovery manager.

    Checkpoint approval is not offered here; it belongs to the host application's
    approval gate.
    """

    def preview_plan(self, command: PlanPreviewCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        request, tasks = load_tasks_file(
            command.tasks_file,
            default_max_retries=settings.orchestrator.default_max_retries,
            default_timeout_seconds=settings.orchestrator.default_task_timeout_seconds,
        )
        context = _cli_context()
        plan = PlanBuilder().build(tasks, context=context, request=command.request or request)
        lines = render_plan_lines(plan)
        if command.save:
            with _state_manager(settings, context=context) as state_manager:
                state_manager.save(plan)
                state_manager.record_event(plan.plan_id, "plan_created", status_to=plan.status.value)
            lines.append(f"Saved plan: {plan.plan_id}")
        return lines

    def list_plans(self, command: StateListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_manager(settings) as state_manager:
            plans = state_manager.list_plans()

        lines = [f"Plans: {len(plans)}"]
        for view in plans:
            updated = view.updated_at.isoformat() if view.updated_at is not None else "-"
            line = (
                f"  {view.plan_id} status={view.status} "
                f"progress={view.completed_tasks}/{view.total_tasks} updated_at={updated}"
            )
            if view.error:
                line += f" error={view.error}"
            lines.append(line)
        return lines

    def inspect_plan(self, command: StateInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_manager(settings) as state_manager:
            plan = state_manager.load(command.plan_id)
            snapshots = state_manager.list_snapshots(command.plan_id)
            events = state_manager.list_events(command.plan_id, limit=command.events_limit)

        state = plan.state
        lines = [
            f"Plan: {plan.plan_id}",
            f"Request: {plan.request or '-'}",
            f"Status: {plan.status.value}",
            f"Progress: completed={state.completed_tasks} failed={state.failed_tasks} "
            f"skipped={state.skipped_tasks} pending={state.pending_tasks} total={state.total_tasks}",
            f"Can resume: {'yes' if state.can_resume else 'no'}",
            f"Resume from: {state.resume_from_task or '-'}",
            f"Last checkpoint: {state.last_checkpoint_id or '-'}",
            f"Recovery attempts: {state.recovery_attempts}",
            f"Snapshots: {', '.join(snapshots) or '-'}",
            "Tasks:",
        ]
        for task in plan.tasks.values():
            error = f" error={task.error}" if task.error else ""
            lines.append(
                f"  {task.task_id} type={task.task_type.value} status={task.status.value} "
                f"retries={task.retry_count}/{task.max_retries}{error}",
            )
        lines.append("Checkpoints:")
        for checkpoint in plan.checkpoints:
            verdict = {None: "pending", True: "approved", False: "rejected"}[checkpoint.approved]
            lines.append(
                f"  {checkpoint.checkpoint_id} after={checkpoint.after_task_id} {verdict}",
            )
        lines.append(f"Events: {len(events)}")
        for event in events:
            subject = f" task={event.task_id}" if event.task_id else ""
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type}{subject} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def resume_plan(self, command: StatePlanCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_manager(settings) as state_manager:
            plan = state_manager.resume(command.plan_id)
        return [
            f"Plan resumable: {plan.plan_id} status={plan.status.value}",
            f"Resume from: {plan.state.resume_from_task or '-'}",
        ]

    def rollback_plan(self, command: StateRollbackCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_manager(settings) as state_manager:
            plan = state_manager.rollback_to_checkpoint(command.plan_id, command.checkpoint_id)
        return [
            f"Plan rolled back: {plan.plan_id} checkpoint={command.checkpoint_id} "
            f"status={plan.status.value}",
            f"Pending tasks: {plan.state.pending_tasks}",
        ]

    def skip_task(self, command: StateSkipCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_manager(settings) as state_manager:
            plan = state_manager.skip_task(command.plan_id, command.task_id)
        return [f"Task skipped: {command.task_id} plan={plan.plan_id} status={plan.status.value}"]

    def restart_plan(self, command: StatePlanCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_manager(settings) as state_manager:
            plan = state_manager.restart(command.plan_id)
        return [f"Plan restarted: {plan.plan_id} status={plan.status.value}"]

    def unlock_plan(self, command: StatePlanCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _state_manager(settings) as state_manager:
            previous = state_manager.force_release(command.plan_id)
        if previous is None:
            return [f"Plan not claimed: {command.plan_id}"]
        return [f"Released plan {command.plan_id} from {previous}"]

    def cleanup(self, command: StateCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        days = (
            command.older_than_days
            if command.older_than_days is not None
            else settings.state.cleanup_after_days
        )
        with _state_manager(settings) as state_manager:
            purged = state_manager.cleanup(timedelta(days=days))
        lines = [f"Purged plans older than {days} day(s): {len(purged)}"]
        lines.extend(f"  {plan_id}" for plan_id in purged)
        return lines


def load_tasks_file(
    path: Path,
    *,
    default_max_retries: int = 3,
    default_timeout_seconds: float | None = None,
) -> tuple[str, list[Task]]:
    """Read `(request, tasks)` from a JSON list of tasks or `{"request", "tasks"}`."""

    payload: Any = json.loads(path.read_text(encoding="utf-8"))
    request = ""
    if isinstance(payload, dict):
        request = str(payload.get("request", ""))
        payload = payload.get("tasks")
    if not isinstance(payload, list):
        raise ValueError(f"{path}: expected a list of tasks or an object with a 'tasks' list.")
    tasks = [
        task_from_dict(
            item,
            default_max_retries=default_max_retries,
            default_timeout_seconds=default_timeout_seconds,
        )
        for item in payload
    ]
    return request, tasks


def render_plan_lines(plan: ExecutionPlan) -> list[str]:
    lines = [
        f"Plan: {plan.plan_id}",
        f"Tasks: {len(plan.tasks)} complexity={plan.complexity} risk={plan.risk}",
        f"Critical path: {' -> '.join(plan.graph.critical_path) or '-'} "
        f"({plan.estimated_seconds:g}s)",
        f"Estimated cost: ${plan.estimated_cost_usd:.4f}",
    ]
    for phase, batches in zip(plan.phases, layout_phases(plan), strict=True):
        marker = " [checkpoint]" if phase.checkpoint else ""
        lines.append(f"Phase {phase.index + 1}: {phase.name} ({phase.estimated_seconds:g}s){marker}")
        for number, batch in enumerate(batches, start=1):
            lines.append(f"  batch {number}: {', '.join(batch)}")
    for checkpoint in plan.checkpoints:
        lines.append(
            f"Checkpoint {checkpoint.checkpoint_id} after {checkpoint.after_task_id}: "
            f"{'; '.join(checkpoint.reasons) or '-'}",
        )
        lines.extend(f"  ? {question}" for question in checkpoint.questions)
    return lines


def _cli_context() -> Context:
    return Context(request_id=f"cli-{uuid4().hex[:12]}", actor_id="cli")


@contextmanager
def _state_manager(
    settings: Settings,
    *,
    context: Context | None = None,
) -> Iterator[StateManager]:
    store = SqliteStateStore(
        settings.state.db_path,
        sqlite_busy_timeout_ms=settings.state.sqlite_busy_timeout_ms,
    )
    if settings.state.migrate_on_start:
        store.init_schema()
    try:
        yield StateManager(store, context=context or _cli_context())
    finally:
        store.close()

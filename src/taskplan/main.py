"""CLI entrypoint for taskplan."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskplan import __version__
from taskplan.controllers import (
    PlanPreviewCommand,
    StateCleanupCommand,
    StateInspectCommand,
    StateListCommand,
    StatePlanCommand,
    StateRollbackCommand,
    StateSkipCommand,
    TaskplanCliController,
)
from taskplan.errors import TaskplanError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskplanCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="taskplan")
def taskplan() -> None:
    """Task orchestration engine CLI."""


@taskplan.group()
def plan() -> None:
    """Plan building commands."""


@plan.command("preview")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--tasks-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with a task list or an object with `request` and `tasks`.",
)
@click.option("--request", default=None, help="Override the request text stored on the plan.")
@click.option(
    "--save/--no-save",
    default=False,
    show_default=True,
    help="Persist the built plan as `pending` in the state store.",
)
def plan_preview(db_path: Path | None, tasks_file: Path, request: str | None, save: bool) -> None:
    """Build a plan from a task file and print phases, batches and checkpoints."""

    _run(
        CONTROLLER.preview_plan,
        PlanPreviewCommand(db_path=db_path, tasks_file=tasks_file, request=request, save=save),
    )


@taskplan.group()
def state() -> None:
    """Persisted plan state and recovery commands."""


@state.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def state_list(db_path: Path | None) -> None:
    """List persisted plans with status and progress."""

    _run(CONTROLLER.list_plans, StateListCommand(db_path=db_path))


@state.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--plan-id", required=True, help="Plan id.")
@click.option(
    "--events-limit",
    type=click.IntRange(min=1),
    default=None,
    help="Show at most this many events (oldest first).",
)
def state_inspect(db_path: Path | None, plan_id: str, events_limit: int | None) -> None:
    """Show tasks, checkpoints, snapshots and the event trail of one plan."""

    _run(
        CONTROLLER.inspect_plan,
        StateInspectCommand(db_path=db_path, plan_id=plan_id, events_limit=events_limit),
    )


@state.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--plan-id", required=True, help="Plan id.")
def state_resume(db_path: Path | None, plan_id: str) -> None:
    """Mark a paused, failed or interrupted plan executable again."""

    _run(CONTROLLER.resume_plan, StatePlanCommand(db_path=db_path, plan_id=plan_id))


@state.command("rollback")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--plan-id", required=True, help="Plan id.")
@click.option("--checkpoint-id", required=True, help="Checkpoint whose snapshot is restored.")
def state_rollback(db_path: Path | None, plan_id: str, checkpoint_id: str) -> None:
    """Restore a checkpoint snapshot; later tasks return to pending."""

    _run(
        CONTROLLER.rollback_plan,
        StateRollbackCommand(db_path=db_path, plan_id=plan_id, checkpoint_id=checkpoint_id),
    )


@state.command("skip")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--plan-id", required=True, help="Plan id.")
@click.option("--task-id", required=True, help="Task to skip.")
def state_skip(db_path: Path | None, plan_id: str, task_id: str) -> None:
    """Skip a failed or not-yet-run task of a paused or failed plan."""

    _run(
        CONTROLLER.skip_task,
        StateSkipCommand(db_path=db_path, plan_id=plan_id, task_id=task_id),
    )


@state.command("restart")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--plan-id", required=True, help="Plan id.")
def state_restart(db_path: Path | None, plan_id: str) -> None:
    """Reset every task of a paused or failed plan to pending."""

    _run(CONTROLLER.restart_plan, StatePlanCommand(db_path=db_path, plan_id=plan_id))


@state.command("unlock")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--plan-id", required=True, help="Plan id.")
def state_unlock(db_path: Path | None, plan_id: str) -> None:
    """Release a writer claim left behind by a crashed orchestrator."""

    _run(CONTROLLER.unlock_plan, StatePlanCommand(db_path=db_path, plan_id=plan_id))


@state.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Age threshold; defaults to TASKPLAN_CLEANUP_AFTER_DAYS.",
)
def state_cleanup(db_path: Path | None, older_than_days: int | None) -> None:
    """Purge completed, failed and cancelled plans older than the threshold."""

    _run(
        CONTROLLER.cleanup,
        StateCleanupCommand(db_path=db_path, older_than_days=older_than_days),
    )


def _run(action: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = action(command)
    except (TaskplanError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskplan()

"""JSON payload codecs for plans, tasks and snapshots."""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from taskplan.graph import build_dependency_graph
from taskplan.models import (
    Checkpoint,
    ExecutionPlan,
    ExecutionState,
    Phase,
    PlanStatus,
    Task,
    TaskResult,
    TaskStatus,
    TaskType,
)
from taskplan.storage.common import from_iso

PLAN_SCHEMA_VERSION = 1


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "name": task.name,
        "task_type": task.task_type.value,
        "action": task.action,
        "description": task.description,
        "dependencies": list(task.dependencies),
        "estimated_seconds": task.estimated_seconds,
        "timeout_seconds": task.timeout_seconds,
        "estimated_cost_usd": task.estimated_cost_usd,
        "checkpoint": task.checkpoint,
        "checkpoint_questions": list(task.checkpoint_questions),
        "retryable": task.retryable,
        "max_retries": task.max_retries,
        "retry_count": task.retry_count,
        "priority": task.priority,
        "tags": list(task.tags),
        "parameters": task.parameters,
        "status": task.status.value,
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
        "error": task.error,
    }


def task_from_dict(
    payload: Mapping[str, Any],
    *,
    default_max_retries: int = 3,
    default_timeout_seconds: float | None = None,
) -> Task:
    """Build a task from a stored payload or a hand-written task file entry.

    Task files may use the short keys `id`, `type` and `depends_on`; the type tag
    accepts both `code-generation` and `code_generation`.
    """

    if not isinstance(payload, Mapping):
        raise ValueError(f"Task entry is not an object: {payload!r}")
    task_id = payload.get("task_id", payload.get("id"))
    if not isinstance(task_id, str) or not task_id:
        raise ValueError(f"Task entry without an id: {dict(payload)!r}")
    raw_type = payload.get("task_type", payload.get("type"))
    if not isinstance(raw_type, str):
        raise ValueError(f"Task {task_id!r} has no type.")
    timeout = payload.get("timeout_seconds", default_timeout_seconds)
    return Task(
        task_id=task_id,
        name=str(payload.get("name") or task_id),
        task_type=TaskType.parse(raw_type, task_id=task_id),
        action=str(payload.get("action") or ""),
        description=str(payload.get("description") or ""),
        dependencies=tuple(
            str(item) for item in payload.get("dependencies", payload.get("depends_on", ()))
        ),
        estimated_seconds=float(payload.get("estimated_seconds", 60.0)),
        timeout_seconds=float(timeout) if timeout is not None else None,
        estimated_cost_usd=float(payload.get("estimated_cost_usd", 0.0)),
        checkpoint=bool(payload.get("checkpoint", False)),
        checkpoint_questions=tuple(str(item) for item in payload.get("checkpoint_questions", ())),
        retryable=bool(payload.get("retryable", True)),
        max_retries=int(payload.get("max_retries", default_max_retries)),
        retry_count=int(payload.get("retry_count", 0)),
        priority=int(payload.get("priority", 0)),
        tags=tuple(str(item) for item in payload.get("tags", ())),
        parameters=dict(payload.get("parameters") or {}),
        status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
        started_at=_from_iso(payload.get("started_at")),
        completed_at=_from_iso(payload.get("completed_at")),
        error=payload.get("error"),
    )


def plan_to_payload(plan: ExecutionPlan) -> dict[str, Any]:
    state = plan.state
    return {
        "schema_version": PLAN_SCHEMA_VERSION,
        "plan_id": plan.plan_id,
        "request": plan.request,
        "status": plan.status.value,
        "complexity": plan.complexity,
        "risk": plan.risk,
        "estimated_seconds": plan.estimated_seconds,
        "estimated_cost_usd": plan.estimated_cost_usd,
        "created_at": _iso(plan.created_at),
        "updated_at": _iso(plan.updated_at),
        "current_task_id": plan.current_task_id,
        "completed_task_ids": list(plan.completed_task_ids),
        "tasks": [task_to_dict(task) for task in plan.tasks.values()],
        "phases": [
            {
                "index": phase.index,
                "name": phase.name,
                "task_ids": list(phase.task_ids),
                "checkpoint": phase.checkpoint,
                "estimated_seconds": phase.estimated_seconds,
            }
            for phase in plan.phases
        ],
        "checkpoints": [
            {
                "checkpoint_id": checkpoint.checkpoint_id,
                "name": checkpoint.name,
                "after_task_id": checkpoint.after_task_id,
                "phase_index": checkpoint.phase_index,
                "reasons": list(checkpoint.reasons),
                "questions": list(checkpoint.questions),
                "approved": checkpoint.approved,
                "feedback": checkpoint.feedback,
                "reached_at": _iso(checkpoint.reached_at),
                "resolved_at": _iso(checkpoint.resolved_at),
            }
            for checkpoint in plan.checkpoints
        ],
        "results": {
            task_id: {
                "output": result.output,
                "duration_seconds": result.duration_seconds,
                "attempts": result.attempts,
                "completed_at": _iso(result.completed_at),
                "tool": result.tool,
            }
            for task_id, result in plan.results.items()
        },
        "state": {
            "last_checkpoint_id": state.last_checkpoint_id,
            "recovery_attempts": state.recovery_attempts,
            "can_resume": state.can_resume,
            "resume_from_task": state.resume_from_task,
        },
    }


def plan_from_payload(payload: Mapping[str, Any]) -> ExecutionPlan:
    """Rebuild a plan; the dependency graph is recomputed from the tasks."""

    version = payload.get("schema_version")
    if version != PLAN_SCHEMA_VERSION:
        raise ValueError(f"Unsupported plan schema_version: {version!r}")

    tasks = [task_from_dict(item) for item in _objects(payload, "tasks")]
    plan = ExecutionPlan(
        plan_id=str(payload["plan_id"]),
        request=str(payload.get("request", "")),
        tasks={task.task_id: task for task in tasks},
        graph=build_dependency_graph(tasks),
        phases=[
            Phase(
                index=int(item["index"]),
                name=str(item["name"]),
                task_ids=tuple(item["task_ids"]),
                checkpoint=bool(item["checkpoint"]),
                estimated_seconds=float(item["estimated_seconds"]),
            )
            for item in _objects(payload, "phases")
        ],
        checkpoints=[
            Checkpoint(
                checkpoint_id=str(item["checkpoint_id"]),
                name=str(item["name"]),
                after_task_id=str(item["after_task_id"]),
                phase_index=int(item["phase_index"]),
                reasons=tuple(item.get("reasons", ())),
                questions=tuple(item.get("questions", ())),
                approved=item.get("approved"),
                feedback=item.get("feedback"),
                reached_at=_from_iso(item.get("reached_at")),
                resolved_at=_from_iso(item.get("resolved_at")),
            )
            for item in _objects(payload, "checkpoints")
        ],
        estimated_seconds=float(payload["estimated_seconds"]),
        estimated_cost_usd=float(payload["estimated_cost_usd"]),
        complexity=str(payload["complexity"]),
        risk=str(payload["risk"]),
        created_at=from_iso(payload["created_at"]),
        updated_at=from_iso(payload["updated_at"]),
        status=PlanStatus(payload["status"]),
        current_task_id=payload.get("current_task_id"),
        completed_task_ids=list(payload.get("completed_task_ids", ())),
        results={
            task_id: TaskResult(
                task_id=task_id,
                output=dict(item.get("output") or {}),
                duration_seconds=float(item["duration_seconds"]),
                attempts=int(item["attempts"]),
                completed_at=from_iso(item["completed_at"]),
                tool=item.get("tool"),
            )
            for task_id, item in _results(payload).items()
        },
    )
    for phase in plan.phases:
        for task_id in phase.task_ids:
            plan.task(task_id)
    for checkpoint in plan.checkpoints:
        plan.task(checkpoint.after_task_id)

    stored_state = payload.get("state", {})
    if not isinstance(stored_state, Mapping):
        raise ValueError("Plan field 'state' is not an object.")
    plan.state = ExecutionState(
        plan_id=plan.plan_id,
        last_checkpoint_id=stored_state.get("last_checkpoint_id"),
        recovery_attempts=int(stored_state.get("recovery_attempts", 0)),
        can_resume=bool(stored_state.get("can_resume", False)),
        resume_from_task=stored_state.get("resume_from_task"),
    )
    plan.state.refresh(plan)
    return plan


def dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def loads(raw: str) -> dict[str, Any]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("Stored payload is not a JSON object.")
    return parsed


def _objects(payload: Mapping[str, Any], field_name: str) -> list[Mapping[str, Any]]:
    items = payload[field_name]
    if not isinstance(items, list) or not all(isinstance(item, Mapping) for item in items):
        raise ValueError(f"Plan field {field_name!r} is not a list of objects.")
    return items


def _results(payload: Mapping[str, Any]) -> Mapping[str, Mapping[str, Any]]:
    results = payload.get("results", {})
    if not isinstance(results, Mapping) or not all(
        isinstance(item, Mapping) for item in results.values()
    ):
        raise ValueError("Plan field 'results' is not an object of objects.")
    return results


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: object) -> datetime | None:
    if value is None:
        return None
    return from_iso(str(value))

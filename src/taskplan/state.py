"""State & recovery manager: write-through persistence, snapshots and recovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from taskplan.errors import (
    RecoveryError,
    StateCorruptionError,
    StateNotFoundError,
    StateOwnershipError,
    TaskplanError,
)
from taskplan.models import (
    TERMINAL_PLAN_STATUSES,
    Context,
    ExecutionPlan,
    PlanStatus,
    TaskStatus,
)
from taskplan.serialization import dumps, loads, plan_from_payload, plan_to_payload
from taskplan.storage.base import StateEventView, StateStore
from taskplan.storage.common import from_iso

logger = logging.getLogger(__name__)

PLAN_KEY_PREFIX = "plan:"
CHECKPOINT_KEY_PREFIX = "checkpoint:"

_SKIPPABLE_TASK_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.PENDING, TaskStatus.READY})
_RECOVERABLE_PLAN_STATUSES = frozenset({PlanStatus.PAUSED, PlanStatus.FAILED})


def plan_key(plan_id: str) -> str:
    return f"{PLAN_KEY_PREFIX}{plan_id}"


def checkpoint_key(plan_id: str, checkpoint_id: str) -> str:
    return f"{CHECKPOINT_KEY_PREFIX}{plan_id}:{checkpoint_id}"


@dataclass(slots=True)
class PlanRecordView:
    """Listing row for one persisted plan."""

    plan_id: str
    status: str
    updated_at: datetime | None
    completed_tasks: int = 0
    total_tasks: int = 0
    error: str | None = None


class StateManager:
    """Sole writer of persisted plan state and checkpoint snapshots.

    Every recovery operation loads the latest record, applies its change and
    writes it back before returning the updated plan.
    """

    def __init__(self, store: StateStore, *, context: Context) -> None:
        self.store = store
        self.context = context

    def save(self, plan: ExecutionPlan, *, owner: str | None = None) -> None:
        self.store.set(plan_key(plan.plan_id), dumps(plan_to_payload(plan)), owner=owner)

    def exists(self, plan_id: str) -> bool:
        return self.store.get(plan_key(plan_id)) is not None

    def load(self, plan_id: str) -> ExecutionPlan:
        """Load the latest persisted plan.

        Raises `StateCorruptionError` (with the last good checkpoint as a hint)
        when the record cannot be decoded.
        """

        key = plan_key(plan_id)
        stored = self.store.get(key)
        if stored is None:
            raise StateNotFoundError(key=key)
        try:
            return plan_from_payload(loads(stored.value))
        except (ValueError, KeyError, TypeError, AttributeError, TaskplanError) as error:
            last_good = self._last_good_checkpoint_id(plan_id)
            logger.error(
                "Persisted plan %s is corrupt (%s); last good checkpoint: %s",
                plan_id,
                error,
                last_good or "none",
            )
            raise StateCorruptionError(
                key=key,
                last_good_checkpoint_id=last_good,
                reason=str(error) or type(error).__name__,
            ) from error

    def acquire(self, plan_id: str, *, owner: str) -> None:
        self.store.claim(plan_key(plan_id), owner=owner)

    def release(self, plan_id: str, *, owner: str) -> bool:
        return self.store.release(plan_key(plan_id), owner=owner)

    def force_release(self, plan_id: str) -> str | None:
        """Clear a stale writer claim (e.g. after a crash); returns the previous owner."""

        key = plan_key(plan_id)
        stored = self.store.get(key)
        if stored is None:
            raise StateNotFoundError(key=key)
        if stored.owner is None:
            return None
        released = self.store.release(key, owner=stored.owner)
        if released:
            logger.warning("Plan %s: released stale writer claim held by %s", plan_id, stored.owner)
            self.record_event(
                plan_id,
                "owner_released",
                details={"previous_owner": stored.owner},
            )
            return stored.owner
        return None

    def create_snapshot(
        self,
        plan: ExecutionPlan,
        checkpoint_id: str,
        *,
        owner: str | None = None,
    ) -> None:
        """Store a full copy of the plan addressable by (plan id, checkpoint id)."""

        plan.checkpoint(checkpoint_id)
        self.store.set(checkpoint_key(plan.plan_id, checkpoint_id), dumps(plan_to_payload(plan)))
        self.record_event(
            plan.plan_id,
            "snapshot_created",
            details={"checkpoint_id": checkpoint_id, "owner": owner},
        )
        logger.info("Plan %s: snapshot stored for checkpoint %s", plan.plan_id, checkpoint_id)

    def load_snapshot(self, plan_id: str, checkpoint_id: str) -> ExecutionPlan:
        key = checkpoint_key(plan_id, checkpoint_id)
        stored = self.store.get(key)
        if stored is None:
            raise StateNotFoundError(key=key)
        try:
            return plan_from_payload(loads(stored.value))
        except (ValueError, KeyError, TypeError, AttributeError, TaskplanError) as error:
            raise StateCorruptionError(
                key=key,
                last_good_checkpoint_id=None,
                reason=str(error) or type(error).__name__,
            ) from error

    def list_snapshots(self, plan_id: str) -> list[str]:
        prefix = checkpoint_key(plan_id, "")
        return [key[len(prefix) :] for key in self.store.keys(prefix)]

    def record_event(  # noqa: PLR0913
        self,
        plan_id: str,
        event_type: str,
        *,
        task_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        self.store.append_event(
            plan_id=plan_id,
            event_type=event_type,
            task_id=task_id,
            status_from=status_from,
            status_to=status_to,
            details=details,
        )

    def list_events(self, plan_id: str, *, limit: int | None = None) -> list[StateEventView]:
        return self.store.list_events(plan_id, limit=limit)

    def list_plans(self) -> list[PlanRecordView]:
        views: list[PlanRecordView] = []
        for key in self.store.keys(PLAN_KEY_PREFIX):
            plan_id = key[len(PLAN_KEY_PREFIX) :]
            try:
                plan = self.load(plan_id)
            except StateCorruptionError as error:
                views.append(
                    PlanRecordView(plan_id=plan_id, status="corrupt", updated_at=None, error=str(error)),
                )
                continue
            views.append(
                PlanRecordView(
                    plan_id=plan.plan_id,
                    status=plan.status.value,
                    updated_at=plan.updated_at,
                    completed_tasks=plan.state.completed_tasks,
                    total_tasks=plan.state.total_tasks,
                ),
            )
        return views

    def resume(self, plan_id: str, *, owner: str | None = None) -> ExecutionPlan:
        """Make a paused, failed or interrupted plan executable again.

        Unfinished tasks (including the resume-from task) go back to `pending`, a
        checkpoint still awaiting a decision counts as approved, and the plan
        returns to `executing`.
        """

        plan = self.load(plan_id)
        if plan.status in TERMINAL_PLAN_STATUSES - {PlanStatus.FAILED}:
            raise RecoveryError(plan_id=plan_id, reason=f"plan is {plan.status.value}")
        if not plan.state.can_resume:
            raise RecoveryError(plan_id=plan_id, reason="plan is not resumable")

        now = self.context.now()
        for task in plan.tasks.values():
            if not task.is_satisfied and task.status != TaskStatus.PENDING:
                task.reset()

        checkpoint_id = plan.state.last_checkpoint_id
        if checkpoint_id is not None:
            checkpoint = plan.checkpoint(checkpoint_id)
            if not checkpoint.resolved and plan.status == PlanStatus.PAUSED:
                checkpoint.approved = True
                checkpoint.feedback = checkpoint.feedback or "resumed"
                checkpoint.resolved_at = now

        status_from = plan.status
        if plan.status != PlanStatus.EXECUTING:
            plan.transition(PlanStatus.EXECUTING)
        plan.current_task_id = None
        plan.state.recovery_attempts += 1
        plan.state.can_resume = True
        plan.state.resume_from_task = plan.first_unsatisfied_task_id()
        self._write(plan, "plan_resumed", status_from=status_from, owner=owner)
        logger.info(
            "Plan %s resumed from %s (recovery attempt %d)",
            plan_id,
            plan.state.resume_from_task or "end of plan",
            plan.state.recovery_attempts,
        )
        return plan

    def rollback_to_checkpoint(
        self,
        plan_id: str,
        checkpoint_id: str,
        *,
        owner: str | None = None,
    ) -> ExecutionPlan:
        """Restore the checkpoint snapshot; later tasks return to `pending`.

        This is the only operation that moves a completed task back to pending
        while keeping the earlier part of the plan intact.
        """

        current = self.load(plan_id)
        if current.status in {PlanStatus.CANCELLED, PlanStatus.COMPLETED}:
            raise RecoveryError(plan_id=plan_id, reason=f"plan is {current.status.value}")
        try:
            current.checkpoint(checkpoint_id)
        except KeyError:
            raise RecoveryError(plan_id=plan_id, reason=f"unknown checkpoint {checkpoint_id}") from None
        try:
            restored = self.load_snapshot(plan_id, checkpoint_id)
        except StateNotFoundError:
            raise RecoveryError(
                plan_id=plan_id,
                reason=f"no snapshot stored for checkpoint {checkpoint_id}",
            ) from None

        checkpoint = restored.checkpoint(checkpoint_id)
        cut = restored.position(checkpoint.after_task_id)
        for index, task in enumerate(restored.tasks.values()):
            if index <= cut:
                continue
            task.reset()
            restored.results.pop(task.task_id, None)
        restored.completed_task_ids = [
            task_id
            for task_id in restored.completed_task_ids
            if restored.task(task_id).status == TaskStatus.COMPLETED
        ]
        for candidate in restored.checkpoints:
            if candidate is checkpoint or restored.position(candidate.after_task_id) > cut:
                candidate.approved = None
                candidate.feedback = None
                candidate.resolved_at = None
                if candidate is not checkpoint:
                    candidate.reached_at = None

        status_from = current.status
        restored.status = PlanStatus.PAUSED
        restored.current_task_id = None
        restored.state.status = PlanStatus.PAUSED
        restored.state.last_checkpoint_id = checkpoint_id
        restored.state.can_resume = True
        restored.state.resume_from_task = restored.first_unsatisfied_task_id()
        restored.state.recovery_attempts = current.state.recovery_attempts + 1
        self._write(
            restored,
            "plan_rolled_back",
            status_from=status_from,
            owner=owner,
            details={"checkpoint_id": checkpoint_id},
        )
        logger.warning(
            "Plan %s rolled back to checkpoint %s (recovery attempt %d)",
            plan_id,
            checkpoint_id,
            restored.state.recovery_attempts,
        )
        return restored

    def skip_task(self, plan_id: str, task_id: str, *, owner: str | None = None) -> ExecutionPlan:
        """Operator skip of a failed or not-yet-run task in a paused or failed plan."""

        plan = self.load(plan_id)
        if plan.status not in _RECOVERABLE_PLAN_STATUSES:
            raise RecoveryError(plan_id=plan_id, reason=f"plan is {plan.status.value}")
        try:
            task = plan.task(task_id)
        except KeyError:
            raise RecoveryError(plan_id=plan_id, reason=f"unknown task {task_id}") from None
        if task.status not in _SKIPPABLE_TASK_STATUSES:
            raise RecoveryError(
                plan_id=plan_id,
                reason=f"task {task_id} is {task.status.value} and cannot be skipped",
            )

        task_status_from = task.status
        task.transition(TaskStatus.SKIPPED, at=self.context.now())
        status_from = plan.status
        if plan.status == PlanStatus.FAILED:
            plan.transition(PlanStatus.PAUSED)
        plan.state.can_resume = True
        plan.state.resume_from_task = plan.first_unsatisfied_task_id()
        self._write(
            plan,
            "task_skipped_by_operator",
            status_from=status_from,
            owner=owner,
            details={"task_id": task_id, "task_status_from": task_status_from.value},
        )
        logger.warning("Plan %s: task %s skipped by operator", plan_id, task_id)
        return plan

    def restart(self, plan_id: str, *, owner: str | None = None) -> ExecutionPlan:
        """Reset every task to `pending` and clear results; the plan waits paused."""

        plan = self.load(plan_id)
        if plan.status not in _RECOVERABLE_PLAN_STATUSES:
            raise RecoveryError(plan_id=plan_id, reason=f"plan is {plan.status.value}")

        for task in plan.tasks.values():
            task.reset()
        plan.results.clear()
        plan.completed_task_ids.clear()
        for checkpoint in plan.checkpoints:
            checkpoint.approved = None
            checkpoint.feedback = None
            checkpoint.reached_at = None
            checkpoint.resolved_at = None

        status_from = plan.status
        if plan.status == PlanStatus.FAILED:
            plan.transition(PlanStatus.PAUSED)
        plan.current_task_id = None
        plan.state.last_checkpoint_id = None
        plan.state.can_resume = True
        plan.state.resume_from_task = plan.first_unsatisfied_task_id()
        plan.state.recovery_attempts += 1
        self._write(plan, "plan_restarted", status_from=status_from, owner=owner)
        logger.warning("Plan %s restarted from scratch", plan_id)
        return plan

    def cleanup(self, older_than: timedelta) -> list[str]:
        """Purge terminal plans last updated before now - `older_than`.

        Active and paused plans are never purged. Corrupt records are reported
        and left in place for manual inspection.
        """

        cutoff = self.context.now() - older_than
        purged: list[str] = []
        for key in self.store.keys(PLAN_KEY_PREFIX):
            plan_id = key[len(PLAN_KEY_PREFIX) :]
            stored = self.store.get(key)
            if stored is None:
                continue
            try:
                payload = loads(stored.value)
                status = PlanStatus(payload["status"])
                updated_at = from_iso(payload["updated_at"])
            except (ValueError, KeyError, TypeError, AttributeError) as error:
                logger.error("Skipping corrupt plan record %s during cleanup: %s", plan_id, error)
                continue
            if status not in TERMINAL_PLAN_STATUSES or updated_at >= cutoff:
                continue
            try:
                self.store.delete(key)
            except StateOwnershipError:
                logger.warning("Skipping plan %s during cleanup: still claimed by a writer", plan_id)
                continue
            for snapshot_key in self.store.keys(checkpoint_key(plan_id, "")):
                self.store.delete(snapshot_key)
            self.store.delete_events(plan_id)
            purged.append(plan_id)
        if purged:
            logger.info("Cleanup purged %d plan(s) older than %s", len(purged), cutoff.isoformat())
        return purged

    def _write(
        self,
        plan: ExecutionPlan,
        event_type: str,
        *,
        status_from: PlanStatus,
        owner: str | None,
        details: dict[str, object] | None = None,
    ) -> None:
        plan.updated_at = self.context.now()
        plan.state.refresh(plan)
        self.save(plan, owner=owner)
        self.record_event(
            plan.plan_id,
            event_type,
            status_from=status_from.value,
            status_to=plan.status.value,
            details=details,
        )

    def _last_good_checkpoint_id(self, plan_id: str) -> str | None:
        newest: tuple[datetime, str] | None = None
        for checkpoint_id in self.list_snapshots(plan_id):
            stored = self.store.get(checkpoint_key(plan_id, checkpoint_id))
            if stored is None:
                continue
            try:
                plan_from_payload(loads(stored.value))
            except (ValueError, KeyError, TypeError, AttributeError, TaskplanError):
                continue
            if newest is None or stored.updated_at > newest[0]:
                newest = (stored.updated_at, checkpoint_id)
        return newest[1] if newest is not None else None

"""Interfaces of the collaborators the orchestrator calls out to."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from taskplan.models import Checkpoint, Context, Task, TaskType


class ErrorCategory(str, Enum):
    """Normalized failure categories used by the recovery policy."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    VALIDATION = "validation"
    RESOURCE = "resource"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    ROLLBACK = "rollback"
    SKIP = "skip"
    FAIL = "fail"


class CheckpointAction(str, Enum):
    CONTINUE = "continue"
    CANCEL = "cancel"
    MODIFY = "modify"


@dataclass(frozen=True, slots=True)
class ToolSelection:
    """Tool chosen for a `tool_call` task."""

    tool: str
    confidence: float
    alternatives: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    """Read-only view of one task attempt handed to a tool executor."""

    task_id: str
    name: str
    task_type: TaskType
    action: str
    description: str
    parameters: Mapping[str, Any]
    attempt: int
    timeout_seconds: float | None
    context: Context
    tool: ToolSelection | None = None


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    """Decision-service verdict on a task failure."""

    category: ErrorCategory
    severity: Severity
    recoverable: bool
    reason_code: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "reason_code": self.reason_code,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(frozen=True, slots=True)
class RecoveryStrategy:
    """One of retry/rollback/skip/fail plus optional parameters.

    Retry honours `base_seconds` / `multiplier`; rollback honours `checkpoint_id`.
    """

    action: RecoveryAction
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CheckpointDecision:
    """Resumption event for a paused plan."""

    action: CheckpointAction
    feedback: str | None = None


class ToolExecutor(Protocol):
    """Performs a task's action. Raise `ToolExecutionError` on failure."""

    def execute(self, invocation: ToolInvocation) -> Mapping[str, Any] | None:
        """Run the action and return its output."""


class DecisionService(Protocol):
    """Ranks tools and recovery strategies; pure from the orchestrator's view."""

    def select_tool(self, invocation: ToolInvocation, context: Context) -> ToolSelection:
        """Pick the tool for a `tool_call` task."""

    def classify_error(self, error: BaseException, context: Context) -> ErrorClassification:
        """Classify a task failure."""

    def select_recovery_strategy(
        self,
        classification: ErrorClassification,
        attempt: int,
        context: Context,
    ) -> RecoveryStrategy:
        """Choose how to react to a classified failure on the given attempt."""


class ApprovalGate(Protocol):
    """Presentation-layer approval surface; may block indefinitely."""

    def request_approval(self, checkpoint: Checkpoint) -> CheckpointDecision:
        """Return the operator's decision for a reached checkpoint."""


class PlanReviser(Protocol):
    """Produces a revised task list when a checkpoint asks to modify the plan."""

    def revise(
        self,
        tasks: Sequence[Task],
        feedback: str | None,
        context: Context,
    ) -> Sequence[Task]:
        """Return the new task list; ids that survive keep their progress."""

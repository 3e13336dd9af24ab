"""Runtime configuration for the orchestrator, state store and context manager."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


def default_owner_id() -> str:
    """Single-writer identity of this process."""

    return f"orchestrator-{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class OrchestratorSettings:
    """Drive loop, retry and concurrency settings."""

    max_parallel_tasks: int = 8
    retry_base_seconds: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_seconds: float = 60.0
    default_max_retries: int = 3
    default_task_timeout_seconds: float | None = None
    owner_id: str = field(default_factory=default_owner_id)


@dataclass(slots=True)
class StateSettings:
    """Durable state store settings."""

    db_path: Path = Path(".taskplan.db")
    sqlite_busy_timeout_ms: int = 5_000
    cleanup_after_days: int = 7
    migrate_on_start: bool = True


@dataclass(slots=True)
class ContextSettings:
    """Tiered context manager settings."""

    token_budget: int = 8_000
    chars_per_token: int = 4
    short_term_turns: int = 10
    medium_term_turns: int = 50


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    state: StateSettings = field(default_factory=StateSettings)
    context: ContextSettings = field(default_factory=ContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        timeout = os.getenv("TASKPLAN_DEFAULT_TASK_TIMEOUT_SECONDS", "").strip()
        return cls(
            orchestrator=OrchestratorSettings(
                max_parallel_tasks=int(os.getenv("TASKPLAN_MAX_PARALLEL_TASKS", "8")),
                retry_base_seconds=float(os.getenv("TASKPLAN_RETRY_BASE_SECONDS", "1.0")),
                retry_multiplier=float(os.getenv("TASKPLAN_RETRY_MULTIPLIER", "2.0")),
                retry_max_seconds=float(os.getenv("TASKPLAN_RETRY_MAX_SECONDS", "60.0")),
                default_max_retries=int(os.getenv("TASKPLAN_DEFAULT_MAX_RETRIES", "3")),
                default_task_timeout_seconds=float(timeout) if timeout else None,
                owner_id=os.getenv("TASKPLAN_OWNER_ID") or default_owner_id(),
            ),
            state=StateSettings(
                db_path=db_path or Path(os.getenv("TASKPLAN_DB_PATH", ".taskplan.db")),
                sqlite_busy_timeout_ms=int(os.getenv("TASKPLAN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                cleanup_after_days=int(os.getenv("TASKPLAN_CLEANUP_AFTER_DAYS", "7")),
                migrate_on_start=_env_bool("TASKPLAN_MIGRATE_ON_START", default=True),
            ),
            context=ContextSettings(
                token_budget=int(os.getenv("TASKPLAN_CONTEXT_TOKEN_BUDGET", "8000")),
                chars_per_token=int(os.getenv("TASKPLAN_CONTEXT_CHARS_PER_TOKEN", "4")),
                short_term_turns=int(os.getenv("TASKPLAN_CONTEXT_SHORT_TERM_TURNS", "10")),
                medium_term_turns=int(os.getenv("TASKPLAN_CONTEXT_MEDIUM_TERM_TURNS", "50")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        orchestrator = self.orchestrator
        if orchestrator.max_parallel_tasks < 1:
            raise ValueError("TASKPLAN_MAX_PARALLEL_TASKS must be >= 1.")
        if orchestrator.retry_base_seconds <= 0:
            raise ValueError("TASKPLAN_RETRY_BASE_SECONDS must be > 0.")
        if orchestrator.retry_multiplier < 1:
            raise ValueError("TASKPLAN_RETRY_MULTIPLIER must be >= 1.")
        if orchestrator.retry_max_seconds < orchestrator.retry_base_seconds:
            raise ValueError(
                "TASKPLAN_RETRY_MAX_SECONDS must be >= TASKPLAN_RETRY_BASE_SECONDS.",
            )
        if orchestrator.default_max_retries < 0:
            raise ValueError("TASKPLAN_DEFAULT_MAX_RETRIES must be >= 0.")
        if (
            orchestrator.default_task_timeout_seconds is not None
            and orchestrator.default_task_timeout_seconds <= 0
        ):
            raise ValueError("TASKPLAN_DEFAULT_TASK_TIMEOUT_SECONDS must be > 0.")
        if not orchestrator.owner_id.strip():
            raise ValueError("TASKPLAN_OWNER_ID must not be empty.")

        if self.state.sqlite_busy_timeout_ms < 1:
            raise ValueError("TASKPLAN_SQLITE_BUSY_TIMEOUT_MS must be >= 1.")
        if self.state.cleanup_after_days < 0:
            raise ValueError("TASKPLAN_CLEANUP_AFTER_DAYS must be >= 0.")

        context = self.context
        if context.token_budget < 1:
            raise ValueError("TASKPLAN_CONTEXT_TOKEN_BUDGET must be >= 1.")
        if context.chars_per_token < 1:
            raise ValueError("TASKPLAN_CONTEXT_CHARS_PER_TOKEN must be >= 1.")
        if not 2 <= context.short_term_turns <= context.medium_term_turns:
            raise ValueError(
                "Expected 2 <= TASKPLAN_CONTEXT_SHORT_TERM_TURNS "
                "<= TASKPLAN_CONTEXT_MEDIUM_TERM_TURNS.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

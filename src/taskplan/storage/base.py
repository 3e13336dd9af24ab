"""Storage contract used by the state & recovery manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


@dataclass(slots=True)
class StateEventView:
    """One audit-trail entry for a plan."""

    event_id: int
    plan_id: str
    task_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class StoredValue:
    """A raw stored value with its ownership and timestamps."""

    key: str
    value: str
    owner: str | None
    created_at: datetime
    updated_at: datetime


class StateStore(Protocol):
    """Durable key-value storage with single-writer ownership.

    `set` with an `owner` succeeds only while the key is unowned or owned by that
    owner; otherwise it raises `StateOwnershipError`.
    """

    def get(self, key: str) -> StoredValue | None:
        """Return the stored value, or None when the key is absent."""

    def set(self, key: str, value: str, *, owner: str | None = None) -> None:
        """Create or replace a value, honouring ownership."""

    def delete(self, key: str, *, owner: str | None = None) -> bool:
        """Delete a key; returns False when it did not exist."""

    def keys(self, prefix: str = "") -> list[str]:
        """Keys starting with `prefix`, sorted."""

    def claim(self, key: str, *, owner: str) -> None:
        """Take write ownership of an existing key."""

    def release(self, key: str, *, owner: str) -> bool:
        """Drop ownership held by `owner`; False when not held by it."""

    def append_event(  # noqa: PLR0913
        self,
        *,
        plan_id: str,
        event_type: str,
        task_id: str | None = None,
        status_from: str | None = None,
        status_to: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append one audit-trail entry."""

    def list_events(self, plan_id: str, *, limit: int | None = None) -> list[StateEventView]:
        """Audit trail for a plan, oldest first."""

    def delete_events(self, plan_id: str) -> int:
        """Remove a plan's audit trail; returns the number of rows deleted."""

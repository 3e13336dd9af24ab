"""Durable key-value storage for plans, checkpoint snapshots and conversations."""

from taskplan.storage.base import StateEventView, StateStore, StoredValue
from taskplan.storage.repository import SqliteStateStore

__all__ = ["SqliteStateStore", "StateEventView", "StateStore", "StoredValue"]

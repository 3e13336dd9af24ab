from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from taskplan.errors import StateNotFoundError, StateOwnershipError
from taskplan.storage.repository import SqliteStateStore

pytestmark = [
    allure.epic("State & Recovery"),
    allure.feature("Durable State Store"),
]


def test_set_get_overwrite_and_delete(store: SqliteStateStore) -> None:
    assert store.get("plan:a") is None

    store.set("plan:a", "v1")
    first = store.get("plan:a")
    assert first is not None
    assert first.value == "v1"
    assert first.owner is None

    store.set("plan:a", "v2")
    second = store.get("plan:a")
    assert second is not None
    assert second.value == "v2"
    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at

    assert store.delete("plan:a") is True
    assert store.delete("plan:a") is False
    assert store.get("plan:a") is None


def test_keys_filter_by_literal_prefix(store: SqliteStateStore) -> None:
    for key in ("plan:a", "plan:b", "checkpoint:a:cp-1", "plan_x"):
        store.set(key, "{}")

    assert store.keys("plan:") == ["plan:a", "plan:b"]
    assert store.keys("checkpoint:a:") == ["checkpoint:a:cp-1"]
    assert store.keys("plan_") == ["plan_x"]
    assert len(store.keys()) == 4


def test_single_writer_ownership(store: SqliteStateStore) -> None:
    store.set("plan:a", "v1")
    store.claim("plan:a", owner="w1")
    store.claim("plan:a", owner="w1")

    store.set("plan:a", "v2", owner="w1")
    with pytest.raises(StateOwnershipError, match="w1"):
        store.set("plan:a", "v3", owner="w2")
    with pytest.raises(StateOwnershipError):
        store.set("plan:a", "v3")
    with pytest.raises(StateOwnershipError):
        store.claim("plan:a", owner="w2")
    with pytest.raises(StateOwnershipError):
        store.delete("plan:a", owner="w2")

    assert store.release("plan:a", owner="w2") is False
    assert store.release("plan:a", owner="w1") is True
    store.set("plan:a", "v3", owner="w2")
    stored = store.get("plan:a")
    assert stored is not None
    assert stored.value == "v3"
    assert stored.owner is None


def test_claim_requires_existing_key(store: SqliteStateStore) -> None:
    with pytest.raises(StateNotFoundError):
        store.claim("plan:missing", owner="w1")


def test_events_are_ordered_limited_and_deletable(store: SqliteStateStore) -> None:
    store.append_event(plan_id="p1", event_type="plan_started", status_to="executing")
    store.append_event(
        plan_id="p1",
        event_type="task_failed",
        task_id="A",
        status_from="executing",
        status_to="failed",
        details={"error": "boom"},
    )
    store.append_event(plan_id="p2", event_type="plan_started")

    events = store.list_events("p1")
    assert [event.event_type for event in events] == ["plan_started", "task_failed"]
    assert events[1].details == {"error": "boom"}
    assert events[0].details == {}
    assert events[1].created_at.tzinfo is not None
    assert [event.event_type for event in store.list_events("p1", limit=1)] == ["plan_started"]

    assert store.delete_events("p1") == 2
    assert store.list_events("p1") == []
    assert len(store.list_events("p2")) == 1


def test_concurrent_writers_on_distinct_keys(tmp_path: Path) -> None:
    store = SqliteStateStore(tmp_path / "concurrent.db")
    store.init_schema()
    errors: list[BaseException] = []

    def _writer(index: int) -> None:
        try:
            for round_number in range(5):
                store.set(f"plan:{index}", f"round-{round_number}")
                store.append_event(plan_id=str(index), event_type="tick")
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_writer, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    try:
        assert errors == []
        assert store.keys("plan:") == [f"plan:{index}" for index in range(4)]
        assert all(store.get(f"plan:{index}").value == "round-4" for index in range(4))
    finally:
        store.close()

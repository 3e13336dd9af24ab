"""Durable key-value state store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from taskplan.errors import StateNotFoundError, StateOwnershipError
from taskplan.storage.alembic_runner import upgrade_head
from taskplan.storage.base import StateEventView, StoredValue
from taskplan.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from taskplan.storage.sqlmodel_models import PlanEvent, StateRecord


class SqliteStateStore:
    """State store facade: ownership-guarded records plus a plan event trail."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def get(self, key: str) -> StoredValue | None:
        with Session(self.engine) as session:
            row = session.exec(select(StateRecord).where(StateRecord.key == key)).one_or_none()
        if row is None:
            return None
        return StoredValue(
            key=row.key,
            value=row.value,
            owner=row.owner,
            created_at=to_utc_aware(row.created_at),
            updated_at=to_utc_aware(row.updated_at),
        )

    def set(self, key: str, value: str, *, owner: str | None = None) -> None:
        """Create or replace `key`; refused while another owner holds it."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(StateRecord)
                    .where(col(StateRecord.key) == key, _owner_matches(owner))
                    .values(value=value, updated_at=now),
                )
                if result.rowcount == 1:
                    session.commit()
                    return

                held_by = _current_owner(session, key)
                if held_by is not None:
                    session.rollback()
                    if held_by[0] is None:
                        continue
                    raise StateOwnershipError(key=key, owner=owner, held_by=held_by[0])

                inserted = session.exec(
                    sqlite_insert(StateRecord)
                    .values(key=key, value=value, owner=None, created_at=now, updated_at=now)
                    .on_conflict_do_nothing(index_elements=["key"]),
                )
                if inserted.rowcount != 1:
                    # Lost an insert race; the row exists now, retry as an update.
                    session.rollback()
                    continue
                session.commit()
                return

    def delete(self, key: str, *, owner: str | None = None) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(StateRecord).where(
                    col(StateRecord.key) == key,
                    _owner_matches(owner),
                ),
            )
            if result.rowcount == 1:
                session.commit()
                return True
            held_by = _current_owner(session, key)
            session.rollback()
        if held_by is None:
            return False
        raise StateOwnershipError(key=key, owner=owner, held_by=held_by[0])

    def keys(self, prefix: str = "") -> list[str]:
        with Session(self.engine) as session:
            statement = select(StateRecord.key).order_by(col(StateRecord.key).asc())
            if prefix:
                statement = statement.where(col(StateRecord.key).startswith(prefix, autoescape=True))
            return list(session.exec(statement).all())

    def claim(self, key: str, *, owner: str) -> None:
        """Take write ownership; idempotent for the current owner."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StateRecord)
                .where(
                    col(StateRecord.key) == key,
                    or_(col(StateRecord.owner).is_(None), col(StateRecord.owner) == owner),
                )
                .values(owner=owner),
            )
            if result.rowcount == 1:
                session.commit()
                return
            held_by = _current_owner(session, key)
            session.rollback()
        if held_by is None:
            raise StateNotFoundError(key=key)
        raise StateOwnershipError(key=key, owner=owner, held_by=held_by[0])

    def release(self, key: str, *, owner: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StateRecord)
                .where(col(StateRecord.key) == key, col(StateRecord.owner) == owner)
                .values(owner=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

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
        with Session(self.engine) as session:
            session.add(
                PlanEvent(
                    plan_id=plan_id,
                    task_id=task_id,
                    event_type=event_type,
                    status_from=status_from,
                    status_to=status_to,
                    details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                    if details
                    else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_events(self, plan_id: str, *, limit: int | None = None) -> list[StateEventView]:
        with Session(self.engine) as session:
            statement = (
                select(PlanEvent)
                .where(PlanEvent.plan_id == plan_id)
                .order_by(col(PlanEvent.id).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()

        events: list[StateEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                StateEventView(
                    event_id=row.id or 0,
                    plan_id=row.plan_id,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return events

    def delete_events(self, plan_id: str) -> int:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(PlanEvent).where(col(PlanEvent.plan_id) == plan_id))
            session.commit()
            return int(result.rowcount or 0)


def _owner_matches(owner: str | None):  # noqa: ANN202
    if owner is None:
        return col(StateRecord.owner).is_(None)
    return or_(col(StateRecord.owner).is_(None), col(StateRecord.owner) == owner)


def _current_owner(session: Session, key: str) -> tuple[str | None] | None:
    """`(owner,)` when the key exists, None when it does not."""

    row = session.exec(select(StateRecord).where(StateRecord.key == key)).one_or_none()
    if row is None:
        return None
    return (row.owner,)

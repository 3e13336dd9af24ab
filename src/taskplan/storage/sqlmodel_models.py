"""SQLModel ORM tables for the durable state store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class StateRecord(SQLModel, table=True):
    __tablename__ = "state_records"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    owner: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PlanEvent(SQLModel, table=True):
    __tablename__ = "plan_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_plan_events_plan_time", "plan_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    plan_id: str = Field(index=True)
    task_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

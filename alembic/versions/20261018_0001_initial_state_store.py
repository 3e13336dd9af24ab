"""Initial state store schema: ownership-guarded records and plan event trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "state_records",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("owner", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_state_records_owner", "state_records", ["owner"])

    op.create_table(
        "plan_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plan_events_plan_id", "plan_events", ["plan_id"])
    op.create_index("ix_plan_events_task_id", "plan_events", ["task_id"])
    op.create_index("ix_plan_events_event_type", "plan_events", ["event_type"])
    op.create_index("idx_plan_events_plan_time", "plan_events", ["plan_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_plan_events_plan_time", table_name="plan_events")
    op.drop_index("ix_plan_events_event_type", table_name="plan_events")
    op.drop_index("ix_plan_events_task_id", table_name="plan_events")
    op.drop_index("ix_plan_events_plan_id", table_name="plan_events")
    op.drop_table("plan_events")
    op.drop_index("ix_state_records_owner", table_name="state_records")
    op.drop_table("state_records")

"""add hot-path indexes for run resume and outbox claims

Revision ID: 0002_hot_path_indexes
Revises: 0001_status_check
Create Date: 2026-10-16
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_status_check"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_status_check_runs_phase_created_at",
        "status_check_runs",
        ["phase", "created_at"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_run_timeline_run_id_state_version",
        "run_timeline",
        ["run_id", "state_version"],
    )


def downgrade() -> None:
    op.drop_index("ix_run_timeline_run_id_state_version", table_name="run_timeline")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_status_check_runs_phase_created_at", table_name="status_check_runs")
